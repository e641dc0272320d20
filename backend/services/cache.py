"""Cached read views and the table of which commands invalidate them.

Views are rebuilt on demand; a view older than the staleness tolerance is
treated as missing so writes made outside this process still show up.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from config import REFRESH_INTERVAL_SECONDS, STALENESS_TOLERANCE_SECONDS

logger = logging.getLogger("labflow")

LAB_ORDERS = "lab-orders"
PRESCRIPTION_LAB_TESTS = "prescription-lab-tests"
ADMIN_SUMMARY = "admin-summary"
UNIFIED_VIEW = "unified-view"

ALL_VIEWS = (LAB_ORDERS, PRESCRIPTION_LAB_TESTS, ADMIN_SUMMARY, UNIFIED_VIEW)

# A status change moves a record between tabs of both source lists and the
# summary, so every command lists every view that can hold the record.
INVALIDATIONS: dict[str, tuple[str, ...]] = {
    "advance_status": ALL_VIEWS,
    "record_payment": ALL_VIEWS,
    "attach_reports": ALL_VIEWS,
    "remove_report": ALL_VIEWS,
    "confirm": ALL_VIEWS,
    "revert": ALL_VIEWS,
}


class ViewCache:
    def __init__(self, staleness_seconds: float = STALENESS_TOLERANCE_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.staleness_seconds = staleness_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, object]] = {}
        # Bumped on every invalidation. A load that started under an older
        # generation returns its value but does not store it.
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, key: str, loader: Callable[[], object]):
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] <= self.staleness_seconds:
                return entry[1]
            generation = self._generations.get(key, 0)
        value = loader()
        with self._lock:
            if self._generations.get(key, 0) == generation:
                self._entries[key] = (self._clock(), value)
            else:
                logger.debug("[CACHE] %s invalidated during load, not stored", key)
        return value

    def invalidate(self, keys) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)
                self._generations[key] = self._generations.get(key, 0) + 1

    def clear(self) -> None:
        with self._lock:
            for key in set(self._entries) | set(self._generations):
                self._generations[key] = self._generations.get(key, 0) + 1
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and self._clock() - entry[0] <= self.staleness_seconds


view_cache = ViewCache()


def invalidate_for(command: str) -> tuple[str, ...]:
    keys = INVALIDATIONS[command]
    view_cache.invalidate(keys)
    logger.debug("[CACHE] %s invalidated %s", command, ", ".join(keys))
    return keys


def refresh_policy() -> dict:
    return {
        "refresh_interval_seconds": REFRESH_INTERVAL_SECONDS,
        "staleness_tolerance_seconds": STALENESS_TOLERANCE_SECONDS,
    }
