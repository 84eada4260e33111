from __future__ import annotations

import copy
import os
import threading
import time
from collections import OrderedDict
from typing import Any


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def report_cache_key(chart_hash: str, model: str) -> str:
    return f"life_kline::{(model or '').strip().lower()}::{chart_hash}"


class ReportCache:
    """Bounded in-memory cache of generated reports.

    Entries expire after `ttl_sec` and the least recently read report is
    evicted first once `max_items` is exceeded. Reports are deep-copied on the
    way in and out so callers can decorate a response without touching the
    cached copy.
    """

    def __init__(self, max_items: int | None = None, ttl_sec: int | None = None):
        self._max_items = max(1, max_items if max_items is not None else _env_int("CACHE_MAX_ITEMS", 512))
        self._ttl_sec = ttl_sec if ttl_sec is not None else _env_int("REPORT_CACHE_TTL_SEC", 1800)
        self._store: OrderedDict[str, tuple[dict[str, Any], float | None]] = OrderedDict()
        self._lock = threading.RLock()

    @property
    def ttl_sec(self) -> int:
        return self._ttl_sec

    def _now(self) -> float:
        return time.time()

    def _prune_expired_unlocked(self) -> None:
        now = self._now()
        for key in [k for k, (_report, expires_at) in self._store.items() if expires_at is not None and expires_at <= now]:
            self._store.pop(key, None)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            self._prune_expired_unlocked()
            entry = self._store.get(key)
            if entry is None:
                return None
            self._store.move_to_end(key)
            return copy.deepcopy(entry[0])

    def set(self, key: str, report: dict[str, Any], ttl_sec: int | None = None) -> None:
        ttl = self._ttl_sec if ttl_sec is None else ttl_sec
        expires_at = self._now() + float(ttl) if ttl and ttl > 0 else None
        with self._lock:
            self._prune_expired_unlocked()
            self._store[key] = (copy.deepcopy(report), expires_at)
            self._store.move_to_end(key)
            while len(self._store) > self._max_items:
                self._store.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            self._prune_expired_unlocked()
            return len(self._store)


report_cache = ReportCache()
