"""JSON-backed runtime configuration (sync mode and friends)."""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from core.settings import CONFIG_PATH


logger = logging.getLogger("taskmirror.config")

SYNC_MODE_STANDALONE = "standalone"
SYNC_MODE_CONNECTED = "connected"
SYNC_MODES = (SYNC_MODE_STANDALONE, SYNC_MODE_CONNECTED)


@dataclass
class AppConfig:
    """Operator settings persisted to ``config.json``."""

    sync_mode: str = SYNC_MODE_STANDALONE
    auto_sync: bool = True
    default_project_id: Optional[str] = None


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _load_raw(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def load_config(path: Optional[Path] = None) -> AppConfig:
    target = path or CONFIG_PATH
    data = _load_raw(target)
    mode = data.get("sync_mode")
    return AppConfig(
        sync_mode=mode if mode in SYNC_MODES else SYNC_MODE_STANDALONE,
        auto_sync=bool(data.get("auto_sync", True)),
        default_project_id=data.get("default_project_id"),
    )


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    target = path or CONFIG_PATH
    _ensure_parent(target)
    payload = json.dumps(asdict(config), ensure_ascii=False, indent=2, sort_keys=True)
    tmp = target.with_suffix(".tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(target)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def update_config(path: Optional[Path] = None, **changes: Any) -> AppConfig:
    target = path or CONFIG_PATH
    cfg = load_config(target)
    for key, value in changes.items():
        if not hasattr(cfg, key):
            raise KeyError(f"Unknown config key: {key}")
        setattr(cfg, key, value)
    if cfg.sync_mode not in SYNC_MODES:
        raise ValueError(f"Unknown sync mode: {cfg.sync_mode}")
    save_config(cfg, target)
    return cfg


__all__ = [
    "AppConfig",
    "SYNC_MODES",
    "SYNC_MODE_CONNECTED",
    "SYNC_MODE_STANDALONE",
    "load_config",
    "save_config",
    "update_config",
]
