# Coinmeter Read-Through Cache
# TTL cache for provisioning-backend reads, with stale-on-error fallback:
# when a refresh fails, the last stored value is served instead of the error.
#
# Expired entries are kept for a stale window (default 24h) so there is
# something to fall back on. Values are stored as JSON.

import fnmatch
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

log = logging.getLogger("coinmeter")

DEFAULT_PREFIX = "prov:"
DEFAULT_STALE_WINDOW_SEC = 24 * 3600


@dataclass
class CacheEntry:
    key: str
    serialized_value: str
    inserted_at: float
    ttl_seconds: int

    def is_fresh(self, now: float) -> bool:
        return now - self.inserted_at < self.ttl_seconds


# ── Backends ──────────────────────────────────────────────────────────


class MemoryCacheBackend:
    """In-process dict backend. Drops entries once they pass the stale window."""

    def __init__(self, stale_window_sec: int = DEFAULT_STALE_WINDOW_SEC,
                 clock: Callable[[], float] = time.time):
        self.stale_window_sec = stale_window_sec
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.inserted_at >= entry.ttl_seconds + self.stale_window_sec:
                del self._entries[key]
                return None
            return entry

    def set(self, entry: CacheEntry):
        with self._lock:
            self._entries[entry.key] = entry

    def keys(self, pattern: str) -> list[str]:
        with self._lock:
            return [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]

    def delete(self, keys: list[str]) -> int:
        with self._lock:
            removed = 0
            for k in keys:
                if self._entries.pop(k, None) is not None:
                    removed += 1
            return removed


class RedisCacheBackend:
    """Redis backend. Each key holds a JSON envelope with its insert time and
    TTL; Redis hard-expires it only after ttl + stale window."""

    def __init__(self, client=None, url: str = "redis://localhost:6379/0",
                 stale_window_sec: int = DEFAULT_STALE_WINDOW_SEC):
        if client is None:
            import redis
            client = redis.Redis.from_url(url, decode_responses=True)
        self._client = client
        self.stale_window_sec = stale_window_sec

    def get(self, key: str) -> Optional[CacheEntry]:
        raw = self._client.get(key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            envelope = json.loads(raw)
            return CacheEntry(
                key=key,
                serialized_value=envelope["v"],
                inserted_at=float(envelope["t"]),
                ttl_seconds=int(envelope["ttl"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            log.warning("CACHE dropping malformed entry %s", key)
            self._client.delete(key)
            return None

    def set(self, entry: CacheEntry):
        envelope = json.dumps({
            "v": entry.serialized_value,
            "t": entry.inserted_at,
            "ttl": entry.ttl_seconds,
        })
        self._client.set(entry.key, envelope, ex=entry.ttl_seconds + self.stale_window_sec)

    def keys(self, pattern: str) -> list[str]:
        return [k.decode("utf-8") if isinstance(k, bytes) else k
                for k in self._client.scan_iter(match=pattern)]

    def delete(self, keys: list[str]) -> int:
        if not keys:
            return 0
        return int(self._client.delete(*keys))


# ── Store ─────────────────────────────────────────────────────────────


class CacheStore:
    """Read-through cache with hit/miss/error counters."""

    def __init__(self, backend=None, prefix: str = DEFAULT_PREFIX,
                 clock: Callable[[], float] = time.time):
        self.backend = backend or MemoryCacheBackend(clock=clock)
        self.prefix = prefix
        self._clock = clock
        self._stats = {"hits": 0, "misses": 0, "errors": 0}
        self._stats_lock = threading.Lock()

    def _bump(self, counter: str):
        with self._stats_lock:
            self._stats[counter] += 1

    def get_or_fetch(self, key: str, ttl_seconds: int, fetch_fn: Callable[[], Any],
                     allow_stale: bool = True) -> Any:
        """Return the cached value for key, or fetch, store and return it.

        If fetch_fn raises and allow_stale is set, the last stored value for
        key is returned even when expired. Otherwise the error propagates.
        """
        full_key = self.prefix + key

        try:
            entry = self.backend.get(full_key)
        except Exception as e:
            # Backend down: behave like a miss.
            self._bump("errors")
            log.warning("CACHE backend read failed for %s: %s", key, e)
            entry = None

        if entry is not None and entry.is_fresh(self._clock()):
            self._bump("hits")
            return json.loads(entry.serialized_value)

        self._bump("misses")
        try:
            data = fetch_fn()
        except Exception as e:
            self._bump("errors")
            log.error("CACHE fetch failed for %s: %s", key, e)
            if allow_stale and entry is not None:
                log.warning("CACHE returning stale data for %s (age %.0fs)",
                            key, self._clock() - entry.inserted_at)
                return json.loads(entry.serialized_value)
            raise

        if ttl_seconds > 0:
            try:
                self.backend.set(CacheEntry(
                    key=full_key,
                    serialized_value=json.dumps(data),
                    inserted_at=self._clock(),
                    ttl_seconds=int(ttl_seconds),
                ))
            except Exception as e:
                self._bump("errors")
                log.warning("CACHE backend write failed for %s: %s", key, e)
        return data

    def set(self, key: str, value: Any, ttl_seconds: int):
        """Seed a value directly."""
        self.backend.set(CacheEntry(
            key=self.prefix + key,
            serialized_value=json.dumps(value),
            inserted_at=self._clock(),
            ttl_seconds=int(ttl_seconds),
        ))

    def delete(self, key: str) -> bool:
        """Delete exactly one key. Glob characters in key are literal."""
        removed = self.backend.delete([self.prefix + key])
        if removed:
            log.info("CACHE deleted %s", key)
        return bool(removed)

    def invalidate(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (e.g. 'status:*')."""
        keys = self.backend.keys(self.prefix + pattern)
        removed = self.backend.delete(keys)
        if removed:
            log.info("CACHE invalidated %d keys matching %s", removed, pattern)
        return removed

    def clear_all(self) -> int:
        removed = self.invalidate("*")
        log.info("CACHE cleared %d entries", removed)
        return removed

    def get_stats(self) -> dict:
        with self._stats_lock:
            stats = dict(self._stats)
        total = stats["hits"] + stats["misses"]
        stats["hit_rate"] = f"{stats['hits'] / total * 100:.2f}%" if total else "0%"
        return stats

    def reset_stats(self):
        with self._stats_lock:
            self._stats = {"hits": 0, "misses": 0, "errors": 0}
