from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("CCR_DB_PATH", "ccr.db")
    poll_interval_s: int = _env_int("CCR_POLL_INTERVAL_S", 5)
    max_parallel: int = _env_int("CCR_MAX_PARALLEL", 4)

    # Rollouts
    ready_timeout_s: float = _env_float("CCR_READY_TIMEOUT_S", 120.0)
    probe_interval_s: float = _env_float("CCR_PROBE_INTERVAL_S", 1.0)
    probe_max_backoff_s: float = _env_float("CCR_PROBE_MAX_BACKOFF_S", 8.0)
    probe_retry_budget: int = _env_int("CCR_PROBE_RETRY_BUDGET", 30)
    # Failed replacements tolerated per rollout before it is aborted.
    failure_threshold: int = _env_int("CCR_FAILURE_THRESHOLD", 1)
    # Consecutive failed probes before a Ready replica is replaced.
    fail_threshold: int = _env_int("CCR_FAIL_THRESHOLD", 2)

    # Docker substrate
    docker_network: str = os.getenv("CCR_DOCKER_NETWORK", "ccr")
    mount_root: str = os.getenv("CCR_MOUNT_ROOT", "ccr-mounts")
    health_timeout_s: float = _env_float("CCR_HEALTH_TIMEOUT_S", 2.0)
    file_sync_interval_s: int = _env_int("CCR_FILE_SYNC_INTERVAL_S", 10)

    # Email alerting (optional)
    enable_email: bool = _env_bool("CCR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("CCR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("CCR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("CCR_SMTP_USER")
    smtp_password: str | None = os.getenv("CCR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("CCR_EMAIL_FROM")
    email_to: str | None = os.getenv("CCR_EMAIL_TO")


settings = Settings()
