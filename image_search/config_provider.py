from __future__ import annotations

import threading
from typing import Any, Dict

from loguru import logger

from .config import DEFAULT_ADMIN_CONFIG, AdminConfig


class ConfigProvider:
    """
    Holds the current AdminConfig snapshot.

    Readers get the snapshot object itself (it is frozen), so a request that
    captured it at start keeps a consistent view even if an admin update lands
    mid-request. Writers validate first and swap under the lock.
    """

    def __init__(self, initial: AdminConfig = DEFAULT_ADMIN_CONFIG):
        self._lock = threading.Lock()
        self._config = initial

    def get_config(self) -> AdminConfig:
        with self._lock:
            return self._config

    def update_config(self, partial: Dict[str, Any]) -> AdminConfig:
        with self._lock:
            updated = self._config.merged(partial)
            self._config = updated
        logger.info("Admin config updated: keys={}", sorted(partial.keys()))
        return updated

    def reset_to_defaults(self) -> AdminConfig:
        with self._lock:
            self._config = DEFAULT_ADMIN_CONFIG
        logger.info("Admin config reset to defaults")
        return DEFAULT_ADMIN_CONFIG
