from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any

from . import db
from .config_store import ConfigStore
from .db import WorkloadStatus
from .errors import NotFoundError, ValidationError
from .runtime import ChangeEvent, ChangeFeed


WORKLOAD_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")

ENVIRONMENT = "environment"
MOUNTED_FILE = "mountedFile"
INJECTION_MODES = {ENVIRONMENT, MOUNTED_FILE}


def validate_health_path(path: str) -> list[str]:
    # Keep it a path (not a full URL) so probes cannot be pointed elsewhere.
    if not path.startswith("/"):
        return ["health_path must start with '/'"]
    if "://" in path or ".." in path:
        return ["health_path must be a simple absolute path (no scheme, no '..')"]
    return []


@dataclass(frozen=True)
class Template:
    image: str
    internal_port: int
    health_path: str = "/health"
    command: list[str] | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfigBinding:
    entry_name: str
    injection_mode: str = ENVIRONMENT


@dataclass(frozen=True)
class WorkloadSpec:
    """Desired state of a replica group. Read-only to the reconciler."""

    name: str
    replica_count: int
    template: Template
    config_bindings: list[ConfigBinding] = field(default_factory=list)
    min_available: int | float = 0
    max_unavailable: int = 1
    max_batch_size: int | None = None

    def resolved_min_available(self) -> int:
        if isinstance(self.min_available, float):
            return int(math.ceil(self.min_available * self.replica_count))
        return int(self.min_available)

    def binding_names(self, mode: str | None = None) -> list[str]:
        return [b.entry_name for b in self.config_bindings if mode is None or b.injection_mode == mode]

    def validate(self, store: ConfigStore) -> None:
        """Raise ValidationError listing every problem; return None when the spec is usable."""
        problems: list[str] = []
        if not WORKLOAD_NAME_RE.match(self.name):
            problems.append("name must be lowercase letters/numbers/hyphen, starting with a letter (max 63 chars)")
        if not self.template.image:
            problems.append("template.image is required")
        if not 1 <= int(self.template.internal_port) <= 65535:
            problems.append("template.internal_port must be within 1..65535")
        problems.extend(validate_health_path(self.template.health_path))

        if self.replica_count < 1:
            problems.append("replica_count must be >= 1")

        seen: set[str] = set()
        for b in self.config_bindings:
            if b.entry_name in seen:
                problems.append(f"config entry '{b.entry_name}' is bound twice")
            seen.add(b.entry_name)
            if b.injection_mode not in INJECTION_MODES:
                problems.append(f"binding '{b.entry_name}' has unknown injection mode '{b.injection_mode}'")
            try:
                store.latest_version(b.entry_name)
            except NotFoundError:
                problems.append(f"binding '{b.entry_name}' does not resolve to a config entry")

        if isinstance(self.min_available, float):
            if not 0.0 <= self.min_available <= 1.0:
                problems.append("min_available ratio must be within [0, 1]")
        elif self.min_available < 0:
            problems.append("min_available must be >= 0")
        if self.resolved_min_available() > self.replica_count:
            problems.append("min_available must be <= replica_count")
        if self.max_unavailable < 1:
            problems.append("max_unavailable must be >= 1")
        if self.max_batch_size is not None and self.max_batch_size < 1:
            problems.append("max_batch_size must be >= 1")

        if problems:
            raise ValidationError(f"Invalid workload '{self.name}'", problems)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "WorkloadSpec":
        t = d["template"]
        return cls(
            name=d["name"],
            replica_count=int(d["replica_count"]),
            template=Template(
                image=t["image"],
                internal_port=int(t["internal_port"]),
                health_path=t.get("health_path", "/health"),
                command=t.get("command"),
                env=dict(t.get("env") or {}),
            ),
            config_bindings=[
                ConfigBinding(entry_name=b["entry_name"], injection_mode=b.get("injection_mode", ENVIRONMENT))
                for b in d.get("config_bindings", [])
            ],
            min_available=d.get("min_available", 0),
            max_unavailable=int(d.get("max_unavailable", 1)),
            max_batch_size=d.get("max_batch_size"),
        )


class WorkloadRegistry:
    """Persists workload specs; validation happens before anything is written."""

    def __init__(self, store: ConfigStore, feed: ChangeFeed | None = None):
        self.store = store
        self.feed = feed

    def put(self, spec: WorkloadSpec) -> WorkloadSpec:
        spec.validate(self.store)
        db.upsert_workload(spec.name, spec.to_dict())
        db.log_event("INFO", f"Workload spec stored ({spec.replica_count} replicas)", workload=spec.name)
        if self.feed:
            self.feed.publish(ChangeEvent(kind="workload", name=spec.name, action="put"))
        return spec

    def get(self, name: str) -> WorkloadSpec:
        row = db.get_workload(name)
        if row is None:
            raise NotFoundError(f"Workload '{name}' not found")
        return WorkloadSpec.from_dict(row.spec)

    def list(self) -> list[WorkloadSpec]:
        return [WorkloadSpec.from_dict(r.spec) for r in db.list_workloads()]

    def names(self) -> list[str]:
        return [r.name for r in db.list_workloads()]

    def status(self, name: str) -> WorkloadStatus:
        row = db.get_workload(name)
        if row is None:
            raise NotFoundError(f"Workload '{name}' not found")
        return WorkloadStatus(row.status)

    def set_status(self, name: str, status: WorkloadStatus) -> None:
        db.set_workload_status(name, status)

    def delete(self, name: str) -> None:
        if not db.delete_workload(name):
            raise NotFoundError(f"Workload '{name}' not found")
        db.log_event("WARN", "Workload spec deleted", workload=name)
        if self.feed:
            self.feed.publish(ChangeEvent(kind="workload", name=name, action="delete"))
