"""Environment-driven settings.

Values are read at call time so tests can monkeypatch the environment.
"""

from __future__ import annotations

import os
from pathlib import Path


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def env_flag(name: str) -> bool:
    flag = os.getenv(name)
    return bool(flag and flag.strip().lower() in {"1", "true", "yes", "on"})


def data_dir() -> Path:
    # Default to run/db at repo root
    root = Path(__file__).resolve().parents[2]
    return Path(os.getenv("DEVBEAVER_DATA_DIR", str(root / "run" / "db")))


def lock_timeout_seconds() -> float:
    return env_float("DEVBEAVER_LOCK_TIMEOUT", 90.0)


def lock_lease_seconds() -> float:
    return env_float("DEVBEAVER_LOCK_LEASE", 300.0)


def llm_timeout_seconds() -> float:
    return env_float("DEVBEAVER_LLM_TIMEOUT", 60.0)


def max_images_per_upload() -> int:
    return env_int("DEVBEAVER_MAX_IMAGES_PER_UPLOAD", 10)
