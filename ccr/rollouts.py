from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Protocol

from . import db
from .db import ReplicaRow, ReplicaState
from .errors import ReadinessTimeout, RolloutCancelled, RolloutFailure
from .runtime import RuntimeState
from .settings import settings
from .workloads import ENVIRONMENT, Template, WorkloadSpec


class Substrate(Protocol):
    """What the executor needs from the orchestration layer underneath it."""

    def create_replica(self, workload_name: str, template: Template, config_versions: dict[str, int]) -> str: ...

    def is_ready(self, replica_id: str) -> bool: ...

    def terminate_replica(self, replica_id: str) -> None: ...


def batch_size(spec: WorkloadSpec) -> int:
    """Largest batch that keeps the availability bounds, capped by max_batch_size, never 0."""
    size = min(spec.max_unavailable, spec.replica_count - spec.resolved_min_available())
    if spec.max_batch_size is not None:
        size = min(size, spec.max_batch_size)
    return max(1, size)


def is_stale(spec: WorkloadSpec, replica: ReplicaRow, target: dict[str, int]) -> bool:
    """Environment-mode versions are fixed at creation; only those force a replacement."""
    return any(replica.config_versions.get(name) != target.get(name) for name in spec.binding_names(ENVIRONMENT))


def observed_versions(replicas: list[ReplicaRow]) -> dict[str, int]:
    """Most common version map among ``replicas``; ties go to the oldest replica."""
    if not replicas:
        return {}
    counts = Counter(json.dumps(r.config_versions, sort_keys=True) for r in replicas)
    return {k: int(v) for k, v in json.loads(counts.most_common(1)[0][0]).items()}


@dataclass
class _Run:
    spec: WorkloadSpec
    target: dict[str, int]
    record_id: int | None
    failures: int = 0


class RolloutExecutor:
    """Replaces replicas in bounded batches, replacement before removal.

    One executor serves every workload; per-rollout state lives in ``_Run``
    and the reconciler guarantees one rollout per workload at a time.
    """

    def __init__(
        self,
        substrate: Substrate,
        runtime: RuntimeState,
        ready_timeout_s: float | None = None,
        probe_interval_s: float | None = None,
        probe_max_backoff_s: float | None = None,
        probe_retry_budget: int | None = None,
        failure_threshold: int | None = None,
        fail_threshold: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.substrate = substrate
        self.runtime = runtime
        self.ready_timeout_s = settings.ready_timeout_s if ready_timeout_s is None else float(ready_timeout_s)
        self.probe_interval_s = settings.probe_interval_s if probe_interval_s is None else float(probe_interval_s)
        self.probe_max_backoff_s = (
            settings.probe_max_backoff_s if probe_max_backoff_s is None else float(probe_max_backoff_s)
        )
        self.probe_retry_budget = max(1, settings.probe_retry_budget if probe_retry_budget is None else probe_retry_budget)
        self.failure_threshold = max(1, settings.failure_threshold if failure_threshold is None else failure_threshold)
        self.fail_threshold = max(1, settings.fail_threshold if fail_threshold is None else fail_threshold)
        self._sleep = sleep
        self._clock = clock

    # --- rollout ---

    def execute(self, spec: WorkloadSpec, target: dict[str, int], record_id: int | None = None) -> None:
        """Converge ``spec``'s replicas on ``target``.

        Raises RolloutFailure (or RolloutCancelled) when a batch is aborted;
        batches completed before that are left in place.
        """
        run = _Run(spec=spec, target=dict(target), record_id=record_id)
        size = batch_size(spec)
        if spec.replica_count == 1:
            db.log_event(
                "WARN",
                "Single-replica workload: availability drops below min_available while the replica is replaced",
                workload=spec.name,
            )
        try:
            ready = db.list_replicas(spec.name, ReplicaState.READY)
            stale = [r for r in ready if is_stale(spec, r, run.target)]
            batches = [stale[i : i + size] for i in range(0, len(stale), size)]
            for idx, batch in enumerate(batches, start=1):
                self._check_cancel(spec.name, record_id)
                db.log_event(
                    "INFO",
                    f"Rollout #{record_id}: batch {idx}/{len(batches)} replacing {len(batch)} replica(s)",
                    workload=spec.name,
                )
                self._bring_up(run, len(batch))
                for old in batch:
                    self._retire(old.id)

            missing = spec.replica_count - len(db.list_replicas(spec.name, ReplicaState.READY))
            while missing > 0:
                self._check_cancel(spec.name, record_id)
                n = min(size, missing)
                self._bring_up(run, n)
                missing -= n
        finally:
            self.runtime.clear_cancel(spec.name, record_id)

    def _check_cancel(self, workload: str, record_id: int | None) -> None:
        rollback = self.runtime.cancel_requested(workload, record_id)
        if rollback is None:
            return
        suffix = "" if rollback else " without rollback"
        raise RolloutCancelled(f"Rollout cancelled by operator{suffix}", rollback=rollback)

    def _bring_up(self, run: _Run, count: int) -> list[str]:
        """Create ``count`` replicas at the run's target and wait until all are Ready.

        On abort every replica created here is removed again, so the batch
        leaves no replica behind in Starting or Failed.
        """
        pending: list[str] = []
        ready: list[str] = []
        try:
            for _ in range(count):
                pending.append(self._create(run.spec, run.target))
            while pending:
                rid = pending.pop(0)
                try:
                    self.wait_ready(rid)
                except (RolloutFailure, ReadinessTimeout) as e:
                    run.failures += 1
                    db.log_event("ERROR", f"Replica {rid} failed: {e}", workload=run.spec.name)
                    self._discard(rid, failed=True)
                    if run.failures >= self.failure_threshold:
                        raise RolloutFailure(
                            f"{run.failures} replacement replica(s) failed readiness; last: {e}", replica_id=rid
                        ) from e
                    pending.append(self._create(run.spec, run.target))
                    continue
                db.set_replica_state(rid, ReplicaState.READY)
                ready.append(rid)
        except RolloutFailure:
            for rid in ready + pending:
                self._discard(rid)
            raise
        return ready

    def _create(self, spec: WorkloadSpec, versions: dict[str, int]) -> str:
        try:
            rid = self.substrate.create_replica(spec.name, spec.template, dict(versions))
        except Exception as e:
            raise RolloutFailure(f"Could not create replica: {type(e).__name__}: {e}") from e
        db.insert_replica(rid, spec.name, versions, ReplicaState.STARTING)
        return rid

    def wait_ready(self, replica_id: str) -> None:
        """Poll the readiness probe with exponential backoff.

        Raises RolloutFailure after ``probe_retry_budget`` failed probes and
        ReadinessTimeout once ``ready_timeout_s`` has elapsed.
        """
        deadline = self._clock() + self.ready_timeout_s
        delay = self.probe_interval_s
        misses = 0
        while True:
            try:
                ok = self.substrate.is_ready(replica_id)
            except Exception:
                ok = False
            if ok:
                return
            misses += 1
            if misses >= self.probe_retry_budget:
                raise RolloutFailure(f"not ready after {misses} probes", replica_id=replica_id)
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ReadinessTimeout(f"not ready within {self.ready_timeout_s:g}s", replica_id=replica_id)
            self._sleep(min(delay, remaining))
            delay = min(delay * 2, self.probe_max_backoff_s) if delay > 0 else 0

    def _retire(self, replica_id: str) -> None:
        db.set_replica_state(replica_id, ReplicaState.TERMINATING)
        self.substrate.terminate_replica(replica_id)
        db.delete_replica(replica_id)
        self.runtime.forget(replica_id)

    def _discard(self, replica_id: str, failed: bool = False) -> None:
        if failed:
            db.set_replica_state(replica_id, ReplicaState.FAILED)
        try:
            self.substrate.terminate_replica(replica_id)
        finally:
            db.delete_replica(replica_id)
            self.runtime.forget(replica_id)

    # --- self-healing ---

    def heal(self, spec: WorkloadSpec) -> int:
        """Bring the replica set back to ``replica_count`` healthy replicas.

        Removes Failed and leftover Starting replicas, replaces Ready replicas
        that failed ``fail_threshold`` consecutive probes, trims extras, and
        fills gaps at the version map the surviving replicas run. A workload
        with no Ready replica is left to the rollout path. Returns the number
        of replicas created or removed.
        """
        changed = 0
        for r in db.list_replicas(spec.name):
            if r.state in {ReplicaState.FAILED.value, ReplicaState.STARTING.value, ReplicaState.TERMINATING.value}:
                self._discard(r.id)
                changed += 1

        healthy: list[ReplicaRow] = []
        for r in db.list_replicas(spec.name, ReplicaState.READY):
            try:
                ok = self.substrate.is_ready(r.id)
            except Exception:
                ok = False
            prev, fail_cnt = self.runtime.mark_health(r.id, ok)
            if prev and not ok:
                db.log_event("WARN", f"Replica {r.id} became unhealthy", workload=spec.name)
            elif prev is False and ok:
                db.log_event("INFO", f"Replica {r.id} recovered", workload=spec.name)
            if not ok and fail_cnt >= self.fail_threshold:
                db.log_event(
                    "ERROR",
                    f"Self-healing: replacing replica {r.id} after {fail_cnt} failed checks",
                    workload=spec.name,
                )
                self._discard(r.id, failed=True)
                changed += 1
                continue
            healthy.append(r)

        if not healthy:
            return changed

        extra = len(healthy) - spec.replica_count
        if extra > 0:
            # Remove the newest extras.
            for r in list(reversed(healthy))[:extra]:
                self._retire(r.id)
                changed += 1
            return changed

        missing = spec.replica_count - len(healthy)
        if missing > 0:
            base = observed_versions(healthy)
            db.log_event("INFO", f"Scaling up: starting {missing} replica(s)", workload=spec.name)
            self._bring_up(_Run(spec=spec, target=base, record_id=None), missing)
            changed += missing
        return changed

    def retire_all(self, workload: str) -> int:
        """Terminate every replica of a workload whose spec was deleted."""
        replicas = db.list_replicas(workload)
        for r in replicas:
            self._retire(r.id)
        return len(replicas)
