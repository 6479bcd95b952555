"""Standalone / connected switch."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from core.settings import REMOTE
from services.merge import MergeResolver, OrphanReport
from storage.config import SYNC_MODE_CONNECTED, SYNC_MODES, load_config, update_config


logger = logging.getLogger("taskmirror.mode")


@dataclass
class SyncModeStatus:
    mode: str
    api_key_set: bool

    def as_dict(self) -> dict:
        return {"mode": self.mode, "apiKeySet": self.api_key_set}


class SyncModeService:
    def __init__(
        self,
        resolver: Optional[MergeResolver] = None,
        *,
        config_path: Optional[Path] = None,
        api_key_set: Optional[bool] = None,
    ) -> None:
        self.resolver = resolver
        self.config_path = config_path
        self._api_key_set = api_key_set

    def _key_present(self) -> bool:
        if self._api_key_set is not None:
            return self._api_key_set
        return REMOTE.api_key() is not None

    def get_sync_mode(self) -> SyncModeStatus:
        return SyncModeStatus(
            mode=load_config(self.config_path).sync_mode,
            api_key_set=self._key_present(),
        )

    async def set_sync_mode(self, mode: str) -> Optional[OrphanReport]:
        """Persist ``mode``; going standalone → connected runs an orphan scan.

        The scan result is returned so the caller can collect merge
        decisions. The mode is saved before the scan, so a scan failure
        still leaves the mirror in connected mode.
        """

        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")
        previous = load_config(self.config_path).sync_mode
        update_config(self.config_path, sync_mode=mode)
        logger.info("Sync mode %s -> %s", previous, mode)

        if mode == SYNC_MODE_CONNECTED and previous != SYNC_MODE_CONNECTED:
            if self.resolver is None:
                raise RuntimeError("Connected mode requires a merge resolver")
            return await self.resolver.detect_orphans()
        return None


__all__ = ["SyncModeService", "SyncModeStatus"]
