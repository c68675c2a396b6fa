"""Error taxonomy shared by the store, the executor and the reconciler."""
from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ReconcilerError):
    """Malformed config entry or workload; rejected before any state mutation."""

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class NotFoundError(ReconcilerError):
    pass


class ConflictError(ReconcilerError):
    """Another rollout already owns the workload."""


class ConfigurationError(ReconcilerError):
    """A workload binds a config entry that does not exist (anymore)."""

    def __init__(self, message: str, workload: str | None = None, entry: str | None = None):
        self.workload = workload
        self.entry = entry
        super().__init__(message)


class RolloutFailure(ReconcilerError):
    def __init__(self, message: str, replica_id: str | None = None):
        self.replica_id = replica_id
        super().__init__(message)


class RolloutCancelled(RolloutFailure):
    def __init__(self, message: str, rollback: bool = True):
        self.rollback = rollback
        super().__init__(message)


class ReadinessTimeout(ReconcilerError, TimeoutError):
    def __init__(self, message: str, replica_id: str | None = None):
        self.replica_id = replica_id
        super().__init__(message)
