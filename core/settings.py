"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``.

    ``TASKMIRROR_DATA_DIR`` overrides the platform default.
    """

    platform_id = (platform or sys.platform).lower()
    environ = dict(env if env is not None else os.environ)
    override = environ.get("TASKMIRROR_DATA_DIR")
    if override:
        return Path(override).expanduser()

    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "TaskMirror"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"

DB_PATH = DATA_DIR / "mirror.db"
CONFIG_PATH = DATA_DIR / "config.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"

# Remote sentinel meaning "no checkpoint, send everything".
FULL_SYNC_TOKEN = "*"


@dataclass(frozen=True)
class RemoteSettings:
    sync_url: str = "https://api.todoist.com/api/v1/sync"
    api_url: str = "https://api.todoist.com/api/v1"
    timeout_sec: float = 30.0
    resource_types: tuple[str, ...] = ("items", "projects", "labels", "notes")
    api_key_env: str = "TODOIST_API_KEY"

    def api_key(self, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
        environ = env if env is not None else os.environ
        value = (environ.get(self.api_key_env) or "").strip()
        return value or None


REMOTE = RemoteSettings()


@dataclass(frozen=True)
class SyncSettings:
    interval_sec: int = 300
    backoff_base_sec: int = 30
    backoff_max_sec: int = 1800
    comment_fetch_delay_sec: float = 0.2
    retryable_status: frozenset[int] = field(
        default_factory=lambda: frozenset({408, 429, 500, 502, 503, 504})
    )


SYNC = SyncSettings()


@dataclass(frozen=True)
class LoggingSettings:
    sync_log_path: Path = SYNC_LOG_PATH
    max_bytes: int = 1_000_000
    backup_count: int = 3
    level: str = os.environ.get("TASKMIRROR_LOG_LEVEL", "INFO")


LOGGING = LoggingSettings()


__all__ = [
    "APP_NAME",
    "CONFIG_PATH",
    "DATA_DIR",
    "DB_PATH",
    "FULL_SYNC_TOKEN",
    "LOGGING",
    "LOG_DIR",
    "REMOTE",
    "SYNC",
    "SYNC_LOG_PATH",
    "get_default_data_dir",
]
