import pytest

from conftest import make_spec

from ccr import db
from ccr.db import ReplicaState
from ccr.errors import ReadinessTimeout, RolloutCancelled, RolloutFailure
from ccr.rollouts import RolloutExecutor, batch_size, observed_versions


@pytest.mark.parametrize(
    "replicas,min_available,max_unavailable,max_batch,expected",
    [
        (4, 3, 1, None, 1),
        (10, 0.5, 3, None, 3),
        (10, 2, 5, 2, 2),
        (10, 8, 5, None, 2),
        (3, 3, 1, None, 1),
        (1, 1, 1, None, 1),
    ],
)
def test_batch_size(replicas, min_available, max_unavailable, max_batch, expected):
    spec = make_spec(
        replicas=replicas, min_available=min_available, max_unavailable=max_unavailable, max_batch_size=max_batch
    )
    assert batch_size(spec) == expected


def _deploy(env, spec, versions):
    env.registry.put(spec)
    env.executor.execute(spec, versions)
    return db.list_replicas(spec.name, ReplicaState.READY)


def test_execute_creates_missing_replicas(env):
    env.store.put("db", "plain", {"user": "a"})
    ready = _deploy(env, make_spec(), {"db": 1})
    assert len(ready) == 4
    assert all(r.config_versions == {"db": 1} for r in ready)


def test_replacement_is_ready_before_old_replica_is_removed(env):
    env.store.put("db", "plain", {"user": "a"})
    spec = make_spec(replicas=6, min_available=4, max_unavailable=2)
    _deploy(env, spec, {"db": 1})
    env.store.put("db", "plain", {"user": "b"})
    env.substrate.log.clear()

    available: list[int] = []
    env.substrate.on_terminate = lambda rid: available.append(len(db.list_replicas("shop", ReplicaState.READY)))
    env.executor.execute(spec, {"db": 2})

    # Batches of two: two creations, then two removals.
    assert env.substrate.actions() == ["create", "create", "terminate", "terminate"] * 3
    assert min(available) >= 4
    ready = db.list_replicas("shop", ReplicaState.READY)
    assert len(ready) == 6
    assert all(r.config_versions == {"db": 2} for r in ready)


def test_file_mode_versions_do_not_force_replacement(env):
    env.store.put("db", "plain", {"user": "a"})
    env.store.put("files", "plain", {"app.conf": "x=1"})
    spec = make_spec(bindings=[("db", "environment"), ("files", "mountedFile")])
    _deploy(env, spec, {"db": 1, "files": 1})
    env.substrate.log.clear()

    env.executor.execute(spec, {"db": 1, "files": 2})
    assert env.substrate.log == []


def test_failed_batch_is_aborted_and_cleaned_up(env):
    env.store.put("db", "plain", {"user": "a"})
    spec = make_spec()
    _deploy(env, spec, {"db": 1})
    env.store.put("db", "plain", {"user": "b"})
    # Fifth creation (first replacement) is fine, the sixth never becomes ready.
    env.substrate.fail_when = lambda versions, n: n >= 6

    with pytest.raises(RolloutFailure):
        env.executor.execute(spec, {"db": 2})

    replicas = db.list_replicas("shop")
    assert len(replicas) == 4
    assert all(r.state == ReplicaState.READY.value for r in replicas)
    # The completed first batch stays in place.
    assert sorted(r.config_versions["db"] for r in replicas) == [1, 1, 1, 2]


def test_failure_threshold_allows_retrying_a_replacement(env, substrate):
    env.store.put("db", "plain", {"user": "a"})
    spec = make_spec(replicas=2, min_available=1)
    executor = RolloutExecutor(
        substrate, env.runtime, probe_interval_s=0, probe_retry_budget=1, failure_threshold=2, sleep=lambda s: None
    )
    env.registry.put(spec)
    substrate.fail_when = lambda versions, n: n == 1

    executor.execute(spec, {"db": 1})

    assert len(db.list_replicas("shop", ReplicaState.READY)) == 2
    assert substrate.actions() == ["create", "terminate", "create", "create"]


def test_cancel_stops_before_next_batch(env):
    env.store.put("db", "plain", {"user": "a"})
    spec = make_spec()
    _deploy(env, spec, {"db": 1})
    env.runtime.request_cancel("shop", rollback=False)

    with pytest.raises(RolloutCancelled) as exc:
        env.executor.execute(spec, {"db": 2})
    assert exc.value.rollback is False
    # The request is consumed by the rollout it stopped.
    assert env.runtime.cancel_requested("shop") is None


def test_wait_ready_uses_retry_budget(env, substrate):
    probes = iter([False, False, True])
    substrate.is_ready = lambda rid: next(probes)
    executor = RolloutExecutor(substrate, env.runtime, probe_interval_s=0, probe_retry_budget=5, sleep=lambda s: None)
    executor.wait_ready("r1")

    substrate.is_ready = lambda rid: False
    executor = RolloutExecutor(substrate, env.runtime, probe_interval_s=0, probe_retry_budget=3, sleep=lambda s: None)
    with pytest.raises(RolloutFailure):
        executor.wait_ready("r1")


def test_wait_ready_times_out_with_backoff(env, substrate):
    now = [0.0]
    sleeps: list[float] = []

    def sleep(s):
        sleeps.append(s)
        now[0] += s

    substrate.is_ready = lambda rid: False
    executor = RolloutExecutor(
        substrate,
        env.runtime,
        ready_timeout_s=10,
        probe_interval_s=1,
        probe_max_backoff_s=4,
        probe_retry_budget=100,
        sleep=sleep,
        clock=lambda: now[0],
    )
    with pytest.raises(ReadinessTimeout) as exc:
        executor.wait_ready("r1")
    assert isinstance(exc.value, TimeoutError)
    assert sleeps == [1, 2, 4, 3]


def test_heal_replaces_replica_after_failed_checks(env):
    env.store.put("db", "plain", {"user": "a"})
    spec = make_spec(replicas=2, min_available=1)
    ready = _deploy(env, spec, {"db": 1})
    sick = ready[0].id
    env.substrate.healthy[sick] = False

    assert env.executor.heal(spec) == 0  # first failed check only
    assert env.executor.heal(spec) == 2  # removed + replacement

    ids = [r.id for r in db.list_replicas("shop", ReplicaState.READY)]
    assert sick not in ids
    assert len(ids) == 2


def test_heal_scales_down_newest_extras(env):
    env.store.put("db", "plain", {"user": "a"})
    spec = make_spec(replicas=3, min_available=1)
    ready = _deploy(env, spec, {"db": 1})
    smaller = make_spec(replicas=1, min_available=1)

    env.executor.heal(smaller)

    assert [r.id for r in db.list_replicas("shop")] == [ready[0].id]


def test_observed_versions_prefers_majority():
    rows = [
        db.ReplicaRow(1, "a", "w", {"db": 1}, "Ready", "", ""),
        db.ReplicaRow(2, "b", "w", {"db": 2}, "Ready", "", ""),
        db.ReplicaRow(3, "c", "w", {"db": 2}, "Ready", "", ""),
    ]
    assert observed_versions(rows) == {"db": 2}
    assert observed_versions(rows[:2]) == {"db": 1}
    assert observed_versions([]) == {}
