from __future__ import annotations

import re
from dataclasses import dataclass
from threading import Lock
from typing import Any, Mapping

from . import db
from .errors import NotFoundError, ValidationError
from .runtime import ChangeEvent, ChangeFeed


PLAIN = "plain"
SENSITIVE = "sensitive"
ENTRY_CLASSES = {PLAIN, SENSITIVE}

ENTRY_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-\.]{0,251}[a-z0-9])?$")
KEY_RE = re.compile(r"^[-._a-zA-Z0-9]+$")
USER_SUFFIXES = ("USERNAME", "USER")
REDACTED = "********"


@dataclass(frozen=True)
class ConfigEntry:
    name: str
    entry_class: str
    version: int
    data: dict[str, str]
    created_at: str

    @property
    def sensitive(self) -> bool:
        return self.entry_class == SENSITIVE

    def redacted(self) -> dict[str, Any]:
        data = {k: REDACTED for k in self.data} if self.sensitive else dict(self.data)
        return {
            "name": self.name,
            "class": self.entry_class,
            "version": self.version,
            "data": data,
            "created_at": self.created_at,
        }


def _credential_problems(data: Mapping[str, str]) -> list[str]:
    """A ``<prefix>USER``/``<prefix>USERNAME`` key needs a ``<prefix>PASSWORD`` key."""
    problems: list[str] = []
    upper = {k.upper(): k for k in data}
    for key_up, key in upper.items():
        for suffix in USER_SUFFIXES:
            if not key_up.endswith(suffix):
                continue
            prefix = key_up[: -len(suffix)]
            if f"{prefix}PASSWORD" not in upper:
                problems.append(f"credential key '{key}' requires '{key[: len(prefix)]}PASSWORD'")
            break
    return problems


def validate_entry(name: str, entry_class: str, data: Any) -> None:
    problems: list[str] = []
    if not isinstance(name, str) or not ENTRY_NAME_RE.match(name):
        problems.append("name must be a lowercase DNS-style name")
    if entry_class not in ENTRY_CLASSES:
        problems.append(f"class must be one of {sorted(ENTRY_CLASSES)}")
    if not isinstance(data, Mapping):
        raise ValidationError(f"Invalid config entry '{name}'", problems + ["data must be a mapping"])

    for k, v in data.items():
        if not isinstance(k, str) or not KEY_RE.match(k):
            problems.append(f"invalid key {k!r}")
        if not isinstance(v, str):
            problems.append(f"value of {k!r} must be a string")

    if entry_class == SENSITIVE:
        if not data:
            problems.append("sensitive entries must not be empty")
        for k, v in data.items():
            if isinstance(v, str) and v == "":
                problems.append(f"sensitive value of {k!r} must not be empty")
        problems.extend(_credential_problems(data))

    if problems:
        raise ValidationError(f"Invalid config entry '{name}'", problems)


class ConfigStore:
    """Versioned key/value source of truth for named configuration sets.

    Every ``put`` appends a new immutable version; readers never observe a
    version change under them, so reads take no lock.
    """

    def __init__(self, feed: ChangeFeed | None = None):
        self.feed = feed
        self._write_lock = Lock()

    def put(self, name: str, entry_class: str, data: Mapping[str, str]) -> int:
        validate_entry(name, entry_class, data)
        with self._write_lock:
            existing = db.get_config_entry(name)
            if existing and existing.entry_class != entry_class:
                raise ValidationError(
                    f"Invalid config entry '{name}'",
                    [f"class is '{existing.entry_class}' and cannot change to '{entry_class}'"],
                )
            version = db.insert_config_version(name, entry_class, dict(data))
        db.log_event("INFO", f"Config entry written at version {version}", entry=name)
        if self.feed:
            self.feed.publish(ChangeEvent(kind="config", name=name, action="put", version=version))
        return version

    def get(self, name: str, version: int | None = None) -> ConfigEntry:
        row = db.get_config_version(name, version)
        if row is None:
            if version is None:
                raise NotFoundError(f"Config entry '{name}' not found")
            raise NotFoundError(f"Config entry '{name}' has no version {version}")
        return ConfigEntry(
            name=row.name,
            entry_class=row.entry_class,
            version=row.version,
            data=dict(row.data),
            created_at=row.created_at,
        )

    def latest_version(self, name: str) -> int:
        return self.get(name).version

    def delete(self, name: str) -> None:
        if not db.mark_config_deleted(name):
            raise NotFoundError(f"Config entry '{name}' not found")
        db.log_event("WARN", "Config entry deleted", entry=name)
        if self.feed:
            self.feed.publish(ChangeEvent(kind="config", name=name, action="delete"))

    def list_entries(self) -> list[dict[str, Any]]:
        return db.list_config_entries()
