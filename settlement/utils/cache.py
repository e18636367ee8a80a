"""
Namespaced in-memory cache.

Entries expire by TTL and are otherwise only invalidated by events emitted
from the ledger engines and the settings provider; business logic never
clears the cache inline.
"""

import logging
import time
from typing import Any, Dict, Optional, Tuple

from settlement.utils.events import (
    ORDER_CHANGED,
    ORDER_PROFITS_CHANGED,
    SETTINGS_CHANGED,
    WALLET_CHANGED,
    subscribe,
)

logger = logging.getLogger(__name__)

SETTINGS_NAMESPACE = "settings"
EARNINGS_NAMESPACE = "earnings"


class CacheManager:
    def __init__(self):
        self._cache: Dict[str, Dict[str, Tuple[Any, float]]] = {}

    def get(self, namespace: str, key: str) -> Optional[Any]:
        entry = self._cache.get(namespace, {}).get(key)
        if entry is None:
            return None

        value, expiration = entry
        if expiration < time.monotonic():
            del self._cache[namespace][key]
            return None
        return value

    def set(self, namespace: str, key: str, value: Any, ttl: int = 300) -> None:
        self._cache.setdefault(namespace, {})[key] = (value, time.monotonic() + ttl)

    def invalidate(self, namespace: str, key: str) -> None:
        self._cache.get(namespace, {}).pop(key, None)

    def invalidate_namespace(self, namespace: str) -> None:
        if self._cache.pop(namespace, None) is not None:
            logger.debug("CACHE_INVALIDATED namespace=%s", namespace)

    def clear(self) -> None:
        self._cache.clear()


cache = CacheManager()


def _on_settings_changed(**_):
    cache.invalidate_namespace(SETTINGS_NAMESPACE)


def _on_ledger_changed(**_):
    cache.invalidate_namespace(EARNINGS_NAMESPACE)


def register_cache_invalidation() -> None:
    subscribe(SETTINGS_CHANGED, _on_settings_changed)
    subscribe(WALLET_CHANGED, _on_ledger_changed)
    subscribe(ORDER_PROFITS_CHANGED, _on_ledger_changed)
    subscribe(ORDER_CHANGED, _on_ledger_changed)
