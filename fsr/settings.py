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


def _env_path(name: str, default: str) -> str:
    return os.path.expanduser(os.getenv(name, default))


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = _env_path("FSR_DB_PATH", "~/.fsr/journal.db")
    config_path: str = _env_path("FSR_CONFIG_PATH", "fleet.yml")
    lock_dir: str = _env_path("FSR_LOCK_DIR", "~/.fsr/locks")
    lock_stale_s: int = _env_int("FSR_LOCK_STALE_S", 3600)
    checkout_locks: bool = _env_bool("FSR_CHECKOUT_LOCKS", True)

    # Timeouts for external calls (seconds)
    query_timeout_s: int = _env_int("FSR_QUERY_TIMEOUT_S", 30)
    command_timeout_s: int = _env_int("FSR_COMMAND_TIMEOUT_S", 300)
    build_timeout_s: int = _env_int("FSR_BUILD_TIMEOUT_S", 1800)
    http_timeout_s: float = _env_float("FSR_HTTP_TIMEOUT_S", 10.0)
    # Heartbeats must never hold up a pass.
    heartbeat_timeout_s: float = _env_float("FSR_HEARTBEAT_TIMEOUT_S", 0.9)

    # Grace periods for detached processes
    process_grace_s: float = _env_float("FSR_PROCESS_GRACE_S", 2.0)
    tunnel_grace_s: float = _env_float("FSR_TUNNEL_GRACE_S", 10.0)
    stop_timeout_s: int = _env_int("FSR_STOP_TIMEOUT_S", 10)

    # Release discovery
    release_api_url: str = os.getenv("FSR_RELEASE_API_URL", "https://api.github.com")
    default_branch: str = os.getenv("FSR_DEFAULT_BRANCH", "main")


settings = Settings()
