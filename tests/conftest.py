from __future__ import annotations

from threading import Event, Lock
from types import SimpleNamespace
from typing import Callable

import pytest

from ccr import db
from ccr.config_store import ConfigStore
from ccr.reconciler import Reconciler
from ccr.rollouts import RolloutExecutor
from ccr.runtime import RuntimeState
from ccr.settings import Settings
from ccr.workloads import ConfigBinding, Template, WorkloadRegistry, WorkloadSpec


class FakeSubstrate:
    """In-memory stand-in for the docker substrate.

    ``fail_when(config_versions, creation_number)`` decides whether a new
    replica will ever pass readiness; ``gate_when`` makes its probe block
    until ``gate`` is set.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._seq = 0
        self.healthy: dict[str, bool] = {}
        self.log: list[tuple[str, str]] = []
        self.fail_when: Callable[[dict[str, int], int], bool] = lambda versions, n: False
        self.gate_when: Callable[[dict[str, int], int], bool] = lambda versions, n: False
        self.gate = Event()
        self.gated_probe_started = Event()
        self._gated: set[str] = set()
        self.on_terminate: Callable[[str], None] | None = None

    def create_replica(self, workload_name, template, config_versions):
        with self._lock:
            self._seq += 1
            n = self._seq
            rid = f"{workload_name}-{n}"
            self.healthy[rid] = not self.fail_when(config_versions, n)
            if self.gate_when(config_versions, n):
                self._gated.add(rid)
            self.log.append(("create", rid))
        return rid

    def is_ready(self, replica_id):
        if replica_id in self._gated:
            self._gated.discard(replica_id)
            self.gated_probe_started.set()
            self.gate.wait(10)
        return self.healthy.get(replica_id, False)

    def terminate_replica(self, replica_id):
        if self.on_terminate:
            self.on_terminate(replica_id)
        with self._lock:
            self.healthy.pop(replica_id, None)
            self.log.append(("terminate", replica_id))

    def actions(self) -> list[str]:
        return [a for a, _ in self.log]


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "ccr.db")))
    db.init_db()
    return tmp_path / "ccr.db"


@pytest.fixture
def substrate() -> FakeSubstrate:
    return FakeSubstrate()


@pytest.fixture
def env(substrate):
    runtime = RuntimeState()
    store = ConfigStore(feed=runtime.feed)
    registry = WorkloadRegistry(store, feed=runtime.feed)
    executor = RolloutExecutor(
        substrate,
        runtime,
        ready_timeout_s=5,
        probe_interval_s=0,
        probe_max_backoff_s=0,
        probe_retry_budget=2,
        failure_threshold=1,
        fail_threshold=2,
        sleep=lambda s: None,
    )
    reconciler = Reconciler(store, registry, executor, runtime, poll_interval_s=0.1, max_parallel=2)
    yield SimpleNamespace(
        runtime=runtime,
        store=store,
        registry=registry,
        executor=executor,
        reconciler=reconciler,
        substrate=substrate,
    )
    reconciler.stop(wait=True)


def make_spec(
    name: str = "shop",
    replicas: int = 4,
    min_available: int | float = 3,
    max_unavailable: int = 1,
    bindings: list[tuple[str, str]] | None = None,
    max_batch_size: int | None = None,
) -> WorkloadSpec:
    if bindings is None:
        bindings = [("db", "environment")]
    return WorkloadSpec(
        name=name,
        replica_count=replicas,
        template=Template(image="echo:1", internal_port=3000),
        config_bindings=[ConfigBinding(entry_name=e, injection_mode=m) for e, m in bindings],
        min_available=min_available,
        max_unavailable=max_unavailable,
        max_batch_size=max_batch_size,
    )
