from __future__ import annotations

import queue
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock
from typing import Callable, Iterator


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # config|workload
    name: str
    action: str  # put|delete
    version: int | None = None
    ts: str = field(default_factory=utc_now)


class ChangeFeed:
    """Fan-out of config/workload change events.

    Listeners are plain callables invoked synchronously by the publisher;
    ``watch`` hands out a lazy, queue-backed sequence for pull-style consumers.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._listeners: list[Callable[[ChangeEvent], None]] = []
        self._queues: list[queue.Queue[ChangeEvent]] = []

    def subscribe(self, listener: Callable[[ChangeEvent], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
            queues = list(self._queues)
        for q in queues:
            q.put(event)
        for listener in listeners:
            listener(event)

    def watch(
        self,
        kind: str | None = None,
        stop: Event | None = None,
        timeout_s: float | None = None,
    ) -> Iterator[ChangeEvent]:
        """Return a lazy sequence of events of ``kind`` (all kinds if None).

        The subscription is registered immediately, so events published after
        this call are never missed. The sequence ends when ``stop`` is set or
        when no event arrived for ``timeout_s`` seconds.
        """
        q: queue.Queue[ChangeEvent] = queue.Queue()
        with self._lock:
            self._queues.append(q)

        def _iter() -> Iterator[ChangeEvent]:
            try:
                while stop is None or not stop.is_set():
                    try:
                        ev = q.get(timeout=timeout_s if timeout_s is not None else 0.5)
                    except queue.Empty:
                        if timeout_s is not None:
                            return
                        continue
                    if kind is None or ev.kind == kind:
                        yield ev
            finally:
                with self._lock:
                    if q in self._queues:
                        self._queues.remove(q)

        return _iter()


class RuntimeState:
    """In-memory state shared by the reconciler and the rollout executor."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.last_status: dict[str, bool] = {}  # replica_id -> last healthy
        self.fail_counts: dict[str, int] = {}  # replica_id -> consecutive fails
        self.workload_locks: dict[str, Lock] = {}
        self.cancel_requests: dict[str, tuple[int | None, bool]] = {}  # workload -> (record id, rollback)
        self.feed = ChangeFeed()

    def workload_lock(self, workload: str) -> Lock:
        with self.lock:
            lk = self.workload_locks.get(workload)
            if lk is None:
                lk = Lock()
                self.workload_locks[workload] = lk
            return lk

    def mark_health(self, replica_id: str, healthy: bool) -> tuple[bool | None, int]:
        """Update last health and consecutive failure count.

        Returns (previous_healthy or None, current_fail_count).
        """
        with self.lock:
            prev = self.last_status.get(replica_id)
            if healthy:
                self.last_status[replica_id] = True
                self.fail_counts[replica_id] = 0
                return prev, 0
            self.last_status[replica_id] = False
            self.fail_counts[replica_id] = self.fail_counts.get(replica_id, 0) + 1
            return prev, self.fail_counts[replica_id]

    def forget(self, replica_id: str) -> None:
        with self.lock:
            self.last_status.pop(replica_id, None)
            self.fail_counts.pop(replica_id, None)

    def request_cancel(self, workload: str, rollback: bool = True, record_id: int | None = None) -> None:
        with self.lock:
            self.cancel_requests[workload] = (record_id, rollback)

    def cancel_requested(self, workload: str, record_id: int | None = None) -> bool | None:
        """Return None if no cancel is pending for ``record_id``, else whether to roll back.

        A request naming another record is ignored; one without a record id
        applies to whichever rollout checks first.
        """
        with self.lock:
            pending = self.cancel_requests.get(workload)
        if pending is None:
            return None
        target, rollback = pending
        if target is not None and record_id is not None and target != record_id:
            return None
        return rollback

    def clear_cancel(self, workload: str, record_id: int | None = None) -> None:
        with self.lock:
            pending = self.cancel_requests.get(workload)
            if pending is None:
                return
            if record_id is None or pending[0] is None or pending[0] == record_id:
                del self.cancel_requests[workload]
