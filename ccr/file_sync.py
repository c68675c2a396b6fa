"""Keeps mountedFile bindings of running replicas up to date.

Replicas read these files at request time, so a new config version reaches
them without a restart. Each key of an entry becomes one file:
``<mount_root>/<replica_id>/<entry>/<key>``.
"""
from __future__ import annotations

import os
import shutil
import tempfile
from threading import Event, Thread

from . import db
from .config_store import ConfigEntry, ConfigStore
from .db import ReplicaState
from .errors import NotFoundError
from .settings import settings
from .workloads import MOUNTED_FILE, WorkloadRegistry


def entry_dir(mount_root: str, replica_id: str, entry_name: str) -> str:
    return os.path.join(os.path.abspath(mount_root), replica_id, entry_name)


def write_entry_files(mount_root: str, replica_id: str, entry: ConfigEntry) -> str:
    """Materialize ``entry`` as one file per key; each file is replaced atomically."""
    path = entry_dir(mount_root, replica_id, entry.name)
    os.makedirs(path, exist_ok=True)
    mode = 0o600 if entry.sensitive else 0o644
    for key, value in entry.data.items():
        fd, tmp = tempfile.mkstemp(dir=path, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.chmod(tmp, mode)
            os.replace(tmp, os.path.join(path, key))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    for name in os.listdir(path):
        if not name.startswith(".tmp-") and name not in entry.data:
            os.unlink(os.path.join(path, name))
    return path


def remove_replica_files(mount_root: str, replica_id: str) -> None:
    shutil.rmtree(os.path.join(os.path.abspath(mount_root), replica_id), ignore_errors=True)


class FileSyncAgent:
    """Polls the store and rewrites mounted files whose entry has a newer version."""

    def __init__(
        self,
        store: ConfigStore,
        registry: WorkloadRegistry,
        mount_root: str | None = None,
        interval_s: float | None = None,
    ):
        self.store = store
        self.registry = registry
        self.mount_root = mount_root or settings.mount_root
        self.interval_s = max(1.0, float(settings.file_sync_interval_s if interval_s is None else interval_s))
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True, name="ccr-file-sync")
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.sync_once()
            except Exception as e:
                db.log_event("ERROR", f"File sync failed: {type(e).__name__}: {e}")
            self._stop.wait(self.interval_s)

    def sync_once(self) -> int:
        """Returns the number of (replica, entry) pairs rewritten."""
        updated = 0
        for spec in self.registry.list():
            names = spec.binding_names(MOUNTED_FILE)
            if not names:
                continue
            latest: dict[str, ConfigEntry] = {}
            for name in names:
                try:
                    latest[name] = self.store.get(name)
                except NotFoundError:
                    # Keep serving the last written files; the reconciler reports the error.
                    db.log_event(
                        "WARN", "Mounted config entry is missing; files left unchanged", workload=spec.name, entry=name
                    )
            for replica in db.list_replicas(spec.name):
                if replica.state not in {ReplicaState.STARTING.value, ReplicaState.READY.value}:
                    continue
                versions = dict(replica.config_versions)
                changed = False
                for name, entry in latest.items():
                    if versions.get(name) == entry.version:
                        continue
                    write_entry_files(self.mount_root, replica.id, entry)
                    versions[name] = entry.version
                    changed = True
                    updated += 1
                if changed:
                    db.update_replica_versions(replica.id, versions)
                    db.log_event("INFO", f"Mounted files of replica {replica.id} refreshed", workload=spec.name)
        return updated

