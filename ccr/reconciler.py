from __future__ import annotations

import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event, Lock, Thread

from . import db
from .alerts import notify
from .config_store import ConfigStore
from .db import ReplicaState, RolloutRecord, RolloutStatus, WorkloadStatus
from .errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RolloutCancelled,
    RolloutFailure,
    ValidationError,
)
from .rollouts import RolloutExecutor, is_stale, observed_versions
from .runtime import ChangeEvent, RuntimeState
from .settings import settings
from .workloads import ENVIRONMENT, WorkloadRegistry, WorkloadSpec

ROLLOUT = "rollout"
ROLLBACK = "rollback"


class Reconciler:
    """Continuously reconciles running replicas with the latest configuration."""

    def __init__(
        self,
        store: ConfigStore,
        registry: WorkloadRegistry,
        executor: RolloutExecutor,
        runtime: RuntimeState,
        poll_interval_s: float | None = None,
        max_parallel: int | None = None,
    ):
        self.store = store
        self.registry = registry
        self.executor = executor
        self.runtime = runtime
        self.poll_interval_s = max(0.1, float(settings.poll_interval_s if poll_interval_s is None else poll_interval_s))
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, settings.max_parallel if max_parallel is None else max_parallel),
            thread_name_prefix="ccr-reconcile",
        )
        self._stop = Event()
        self._wake = Event()
        self._thr: Thread | None = None
        self._start_lock = Lock()
        runtime.feed.subscribe(self._on_change)

    # --- loop ---

    def start(self) -> None:
        with self._start_lock:
            if self._thr and self._thr.is_alive():
                return
            interrupted = db.fail_interrupted_rollouts()
            if interrupted:
                db.log_event("WARN", f"Marked {interrupted} interrupted rollout(s) as Failed")
            self._stop.clear()
            self._thr = Thread(target=self._loop, daemon=True, name="ccr-reconciler")
            self._thr.start()

    def stop(self, wait: bool = False) -> None:
        self._stop.set()
        self._wake.set()
        if wait and self._thr:
            self._thr.join()
        self._pool.shutdown(wait=wait)

    def _on_change(self, event: ChangeEvent) -> None:
        self._wake.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            self._wake.wait(self.poll_interval_s)
            self._wake.clear()
        db.log_event("INFO", "Reconciler stopped")

    def tick(self) -> dict[str, str]:
        """Reconcile every workload once; returns an outcome per workload."""
        names = self.registry.names()
        futures: dict[str, Future[str]] = {n: self._pool.submit(self._reconcile_safely, n) for n in names}
        for orphan in set(db.replica_workloads()) - set(names):
            futures[orphan] = self._pool.submit(self._collect_orphan, orphan)
        return {n: f.result() for n, f in futures.items()}

    def _reconcile_safely(self, name: str) -> str:
        try:
            return self.reconcile_workload(name)
        except ConfigurationError as e:
            db.log_event("ERROR", f"Configuration error: {e}", workload=name, entry=e.entry)
            return "config-error"
        except Exception as e:
            db.log_event("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", workload=name)
            return "error"

    def _collect_orphan(self, workload: str) -> str:
        lock = self.runtime.workload_lock(workload)
        if not lock.acquire(blocking=False):
            return "busy"
        try:
            removed = self.executor.retire_all(workload)
        finally:
            lock.release()
        db.log_event("INFO", f"Removed {removed} replica(s) of deleted workload", workload=workload)
        return "removed"

    # --- reconciliation ---

    def reconcile_workload(self, name: str) -> str:
        """Run one reconciliation pass for ``name``.

        Returns one of: busy, missing, stuck, in-sync, held, succeeded,
        rolled-back, cancelled, failed. Raises ConfigurationError when a bound
        entry is gone; no replica is touched in that case.
        """
        lock = self.runtime.workload_lock(name)
        if not lock.acquire(blocking=False):
            return "busy"
        try:
            return self._reconcile_locked(name)
        finally:
            lock.release()

    def _reconcile_locked(self, name: str) -> str:
        try:
            spec = self.registry.get(name)
            status = self.registry.status(name)
        except NotFoundError:
            return "missing"
        if status == WorkloadStatus.STUCK:
            return "stuck"
        if db.in_progress_rollout(name):
            return "busy"

        target = self.target_versions(spec)

        try:
            self.executor.heal(spec)
        except RolloutFailure as e:
            db.log_event("ERROR", f"Self-healing failed: {e}", workload=name)

        ready = db.list_replicas(name, ReplicaState.READY)
        if not self.detect_drift(spec, ready, target):
            return "in-sync"

        last = db.last_rollout(name)
        if self._held(target, last):
            return "held"

        record = db.insert_rollout(name, ROLLOUT, observed_versions(ready), target)
        db.log_event(
            "INFO",
            f"Drift detected, rollout #{record.id} started: {record.from_versions} -> {record.to_versions}",
            workload=name,
        )
        return self._run_rollout(spec, record)

    def target_versions(self, spec: WorkloadSpec) -> dict[str, int]:
        target: dict[str, int] = {}
        for b in spec.config_bindings:
            try:
                target[b.entry_name] = self.store.latest_version(b.entry_name)
            except NotFoundError as e:
                raise ConfigurationError(
                    f"workload '{spec.name}' binds missing config entry '{b.entry_name}'",
                    workload=spec.name,
                    entry=b.entry_name,
                ) from e
        return target

    def detect_drift(self, spec: WorkloadSpec, ready: list[db.ReplicaRow], target: dict[str, int]) -> bool:
        """Any Ready replica on a stale environment-mode version counts as drift.

        mountedFile bindings never trigger a rollout; the file sync agent
        updates those in place.
        """
        if not ready:
            return spec.replica_count > 0
        if not spec.binding_names(ENVIRONMENT):
            return False
        return any(is_stale(spec, r, target) for r in ready)

    @staticmethod
    def _held(target: dict[str, int], last: RolloutRecord | None) -> bool:
        if last is None:
            return False
        if last.kind == ROLLOUT and last.status == RolloutStatus.FAILED.value and last.message != db.INTERRUPTED:
            return last.to_versions == target
        if last.kind == ROLLBACK and last.status == RolloutStatus.ROLLED_BACK.value:
            return last.from_versions == target
        return False

    def _run_rollout(self, spec: WorkloadSpec, record: RolloutRecord) -> str:
        try:
            self.executor.execute(spec, record.to_versions, record.id)
        except RolloutCancelled as e:
            self._finish(record, RolloutStatus.FAILED, e.message)
            db.log_event("WARN", f"Rollout #{record.id}: {e.message}", workload=spec.name)
            if not e.rollback:
                return "cancelled"
            return self._auto_rollback(spec, record)
        except RolloutFailure as e:
            self._finish(record, RolloutStatus.FAILED, e.message)
            db.log_event("ERROR", f"Rollout #{record.id} failed: {e.message}", workload=spec.name)
            self._alert(spec.name, f"Rollout #{record.id} failed", e.message, record)
            return self._auto_rollback(spec, record)
        self._finish(record, RolloutStatus.SUCCEEDED, "Rollout completed")
        db.log_event("INFO", f"Rollout #{record.id} succeeded", workload=spec.name)
        return "succeeded"

    def _finish(self, record: RolloutRecord, status: RolloutStatus, message: str) -> None:
        db.finish_rollout(record.id, status, message)
        self.runtime.clear_cancel(record.workload, record.id)

    def rollback_target(self, workload: str, failed: RolloutRecord) -> dict[str, int]:
        """The map the failed rollout started from.

        Falls back to the most recent Succeeded map when no Ready replica was
        observed at rollout start.
        """
        if failed.from_versions:
            return failed.from_versions
        good = db.last_rollout(workload, RolloutStatus.SUCCEEDED)
        return good.to_versions if good is not None else {}

    def _auto_rollback(self, spec: WorkloadSpec, failed: RolloutRecord) -> str:
        target = self.rollback_target(spec.name, failed)
        if not target and spec.config_bindings:
            self._mark_stuck(
                spec.name, f"Rollout #{failed.id} failed with no previous configuration to restore", failed
            )
            return "stuck"
        record = db.insert_rollout(
            spec.name, ROLLBACK, failed.to_versions, target, message=f"Automatic rollback of #{failed.id}"
        )
        db.log_event("WARN", f"Rollback #{record.id} started: -> {target}", workload=spec.name)
        return self._run_rollback(spec, record)

    def _run_rollback(self, spec: WorkloadSpec, record: RolloutRecord) -> str:
        try:
            self._check_resolvable(spec, record.to_versions)
            self.executor.execute(spec, record.to_versions, record.id)
        except (RolloutFailure, ConfigurationError) as e:
            self._finish(record, RolloutStatus.FAILED, e.message)
            self._mark_stuck(spec.name, f"Rollback #{record.id} failed: {e.message}", record)
            return "stuck"
        self._finish(record, RolloutStatus.ROLLED_BACK, "Rollback completed")
        db.log_event("INFO", f"Rollback #{record.id} completed", workload=spec.name)
        return "rolled-back"

    def _check_resolvable(self, spec: WorkloadSpec, versions: dict[str, int]) -> None:
        for entry, version in versions.items():
            try:
                self.store.get(entry, version)
            except NotFoundError as e:
                raise ConfigurationError(
                    f"cannot restore '{entry}' version {version}: {e.message}", workload=spec.name, entry=entry
                ) from e

    def _mark_stuck(self, workload: str, reason: str, record: RolloutRecord | None = None) -> None:
        self.registry.set_status(workload, WorkloadStatus.STUCK)
        db.log_event("ERROR", f"Workload stuck, operator action required: {reason}", workload=workload)
        self._alert(workload, "Workload STUCK", reason, record)

    def _alert(self, workload: str, subject: str, reason: str, record: RolloutRecord | None = None) -> None:
        if record is not None:
            record = db.get_rollout(record.id) or record
        notify(workload, subject, reason, record)

    # --- operator operations ---

    def get_rollout_history(self, workload: str) -> list[RolloutRecord]:
        history = db.list_rollouts(workload)
        if not history and db.get_workload(workload) is None:
            raise NotFoundError(f"Workload '{workload}' not found")
        return history

    def request_rollback(self, workload: str, to_record_id: int | None = None, wait: bool = False) -> RolloutRecord:
        """Roll ``workload`` back to the map a previous record converged on.

        Defaults to the most recent Succeeded record. Clears a Stuck status.
        Runs on the reconcile pool; ``wait`` blocks until it resolves.
        """
        spec = self.registry.get(workload)
        lock = self.runtime.workload_lock(workload)
        if not lock.acquire(blocking=False):
            raise ConflictError(f"Workload '{workload}' is being reconciled")
        try:
            if db.in_progress_rollout(workload):
                raise ConflictError(f"Workload '{workload}' already has a rollout in progress")
            if to_record_id is None:
                source = db.last_rollout(workload, RolloutStatus.SUCCEEDED)
                if source is None:
                    raise NotFoundError(f"Workload '{workload}' has no Succeeded rollout to return to")
            else:
                source = db.get_rollout(to_record_id)
                if source is None or source.workload != workload:
                    raise NotFoundError(f"Rollout #{to_record_id} not found for workload '{workload}'")
                if source.status not in {RolloutStatus.SUCCEEDED.value, RolloutStatus.ROLLED_BACK.value}:
                    raise ValidationError(
                        f"Rollout #{to_record_id} is {source.status}; only Succeeded or RolledBack records can be restored"
                    )
            self._check_resolvable(spec, source.to_versions)
            ready = db.list_replicas(workload, ReplicaState.READY)
            try:
                record = db.insert_rollout(
                    workload,
                    ROLLBACK,
                    observed_versions(ready),
                    source.to_versions,
                    message=f"Operator rollback to #{source.id}",
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Workload '{workload}' already has a rollout in progress") from e
            self.registry.set_status(workload, WorkloadStatus.ACTIVE)
            db.log_event("WARN", f"Operator requested rollback #{record.id} to #{source.id}", workload=workload)
            try:
                fut = self._pool.submit(self._run_owned_rollback, spec, record, lock)
            except RuntimeError as e:
                # Pool already shut down.
                self._finish(record, RolloutStatus.FAILED, f"Rollback not started: {e}")
                raise ConflictError(f"Reconciler is stopped; rollback of '{workload}' not started") from e
        except BaseException:
            lock.release()
            raise

        if wait:
            fut.result()
        return db.get_rollout(record.id) or record

    def _run_owned_rollback(self, spec: WorkloadSpec, record: RolloutRecord, lock: Lock) -> str:
        try:
            return self._run_rollback(spec, record)
        finally:
            lock.release()

    def request_cancel(self, workload: str, rollback: bool = True) -> RolloutRecord:
        record = db.in_progress_rollout(workload)
        if record is None:
            raise NotFoundError(f"Workload '{workload}' has no rollout in progress")
        self.runtime.request_cancel(workload, rollback, record_id=record.id)
        current = db.in_progress_rollout(workload)
        if current is None or current.id != record.id:
            # Finished while the request was being stored.
            self.runtime.clear_cancel(workload, record.id)
            raise NotFoundError(f"Rollout #{record.id} of '{workload}' is no longer in progress")
        db.log_event(
            "WARN",
            f"Cancellation of #{record.id} requested ({'with' if rollback else 'without'} rollback)",
            workload=workload,
        )
        return record

    def resume(self, workload: str) -> None:
        self.registry.status(workload)
        self.registry.set_status(workload, WorkloadStatus.ACTIVE)
        db.log_event("INFO", "Workload resumed by operator", workload=workload)
        self._wake.set()
