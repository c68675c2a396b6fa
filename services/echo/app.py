from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI

# Keys shown by default; override with ECHO_KEYS=KEY1,KEY2.
DEFAULT_KEYS = [
    "DATABASE_URL",
    "CACHE_SIZE",
    "PAYMENT_GATEWAY_URL",
    "MAX_CART_ITEMS",
    "SESSION_TIMEOUT",
    "DB_USERNAME",
    "DB_PASSWORD",
]
NOT_SET = "NOT SET"

app = FastAPI(title="Config Echo Service")


def _keys() -> list[str]:
    raw = os.getenv("ECHO_KEYS")
    if not raw:
        return DEFAULT_KEYS
    return [k.strip() for k in raw.split(",") if k.strip()]


def _mounted_files() -> dict[str, dict[str, str]]:
    """Read mounted config files on every request; they change without a restart."""
    root = os.getenv("CCR_CONFIG_DIR")
    if not root or not os.path.isdir(root):
        return {}
    out: dict[str, dict[str, str]] = {}
    for entry in sorted(Path(root).iterdir()):
        if not entry.is_dir():
            continue
        out[entry.name] = {
            f.name: f.read_text(encoding="utf-8")
            for f in sorted(entry.iterdir())
            if f.is_file() and not f.name.startswith(".")
        }
    return out


@app.get("/")
def read_root() -> dict:
    return {
        "environment": {k: os.getenv(k, NOT_SET) for k in _keys()},
        "files": _mounted_files(),
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
