"""Stage cache for pipeline outputs and result snapshots.

Each completed stage stores its output under ``"{request_id}:{stage}"``
and every result snapshot lives under ``"result:{request_id}"``.  A hit
on a stage key lets the pipeline skip the remote call for that stage
entirely, which is what makes re-runs and resumes cheap.

Entries expire after a TTL (default one hour).  The cache also keeps an
approximate byte budget: the size of an entry is the UTF-8 length of its
JSON encoding, and when a write pushes the total over
``max_size_bytes`` the oldest entries are evicted until it fits again.

The cache is best-effort.  Serialisation or SQLite failures are logged
and treated as misses; they never fail a generation.

Usage::

    cache = StageCache(StageCacheConfig(ttl_seconds=600), db_path="cache.db")
    cache.set(stage_cache_key("sword-1", "image"), {"image_url": "..."})
    cache.get(stage_cache_key("sword-1", "image"))
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_DEFAULT_MAX_SIZE_BYTES = 500 * 1024 * 1024


def stage_cache_key(request_id: str, stage: Any) -> str:
    """Key for one stage's output (*stage* may be a ``StageName`` or str)."""
    return f"{request_id}:{getattr(stage, 'value', stage)}"


def result_cache_key(request_id: str) -> str:
    """Key for the full result snapshot of a request."""
    return f"result:{request_id}"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    """One cached value with its expiry metadata.

    :param key: Cache key.
    :param payload: JSON encoding of the cached value.
    :param size_bytes: UTF-8 length of *payload*.
    :param cached_at: Unix timestamp of the write.
    :param expires_at: Unix timestamp after which the entry is dead.
    """

    key: str
    payload: str
    size_bytes: int
    cached_at: float
    expires_at: float

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expires_at


@dataclass
class StageCacheConfig:
    """Configuration for :class:`StageCache`.

    :param enabled: When ``False`` every lookup misses and writes are dropped.
    :param ttl_seconds: Default time-to-live for new entries.
    :param max_size_bytes: Approximate budget for all cached payloads.
    """

    enabled: bool = True
    ttl_seconds: float = 3600
    max_size_bytes: int = _DEFAULT_MAX_SIZE_BYTES

    def __post_init__(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {self.ttl_seconds}")
        if self.max_size_bytes <= 0:
            raise ValueError(f"max_size_bytes must be positive, got {self.max_size_bytes}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# StageCache
# ---------------------------------------------------------------------------


class StageCache:
    """In-memory key/value cache with TTL, a byte budget and optional
    SQLite persistence.

    Thread-safe via :class:`threading.Lock`; each operation is atomic for
    its key.

    :param config: Cache configuration.  Uses defaults if ``None``.
    :param db_path: Path to a SQLite database for persistence.
        If ``None``, the cache is in-memory only.
    """

    def __init__(
        self,
        config: Optional[StageCacheConfig] = None,
        *,
        db_path: Optional[str] = None,
    ) -> None:
        self._config = config or StageCacheConfig()
        self._lock = threading.Lock()
        self._cache: Dict[str, CacheEntry] = {}
        self._total_bytes: int = 0
        self._hits: int = 0
        self._misses: int = 0

        self._conn: Optional[sqlite3.Connection] = None
        if db_path is not None and self._config.enabled:
            try:
                parent = os.path.dirname(db_path)
                if parent:
                    os.makedirs(parent, exist_ok=True)
                self._conn = sqlite3.connect(db_path, check_same_thread=False)
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA busy_timeout=5000")
                self._ensure_schema()
                self._load_from_db()
            except (sqlite3.Error, OSError) as exc:
                logger.warning(
                    "Stage cache database %s unavailable, using memory only: %s",
                    db_path,
                    exc,
                )
                self._conn = None

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def config(self) -> StageCacheConfig:
        return self._config

    # ------------------------------------------------------------------
    # Schema (SQLite persistence)
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        """Create the cache table if it does not already exist."""
        if self._conn is None:
            return
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS stage_cache (
                cache_key   TEXT PRIMARY KEY,
                payload     TEXT NOT NULL,
                size_bytes  INTEGER NOT NULL,
                cached_at   REAL NOT NULL,
                expires_at  REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_sc_expires
                ON stage_cache(expires_at);
            """
        )
        self._conn.commit()

    def _load_from_db(self) -> None:
        """Load non-expired entries from SQLite into memory."""
        if self._conn is None:
            return
        rows = self._conn.execute(
            "SELECT cache_key, payload, size_bytes, cached_at, expires_at "
            "FROM stage_cache WHERE expires_at > ? ORDER BY cached_at",
            (time.time(),),
        ).fetchall()
        for key, payload, size_bytes, cached_at, expires_at in rows:
            entry = CacheEntry(key, payload, size_bytes, cached_at, expires_at)
            self._cache[key] = entry
            self._total_bytes += size_bytes
        self._evict_over_budget()
        if rows:
            logger.debug("Loaded %d stage cache entries from disk", len(self._cache))

    def _persist(self, entry: CacheEntry) -> None:
        """Write a single entry to the SQLite store."""
        if self._conn is None:
            return
        try:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO stage_cache
                    (cache_key, payload, size_bytes, cached_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry.key, entry.payload, entry.size_bytes, entry.cached_at, entry.expires_at),
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Failed to persist cache entry %s: %s", entry.key, exc)

    def _delete_from_db(self, key: str) -> None:
        """Remove a single entry from the SQLite store."""
        if self._conn is None:
            return
        try:
            self._conn.execute("DELETE FROM stage_cache WHERE cache_key = ?", (key,))
            self._conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Failed to delete cache entry %s: %s", key, exc)

    def _clear_db(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.execute("DELETE FROM stage_cache")
            self._conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Failed to clear stage cache database: %s", exc)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _remove(self, key: str) -> Optional[CacheEntry]:
        """Drop *key* from memory and disk.  Caller holds ``self._lock``."""
        entry = self._cache.pop(key, None)
        if entry is not None:
            self._total_bytes -= entry.size_bytes
            self._delete_from_db(key)
        return entry

    def _evict_over_budget(self) -> None:
        """Evict oldest entries until the byte total fits the budget.

        Must be called while holding ``self._lock`` (or during init).
        """
        while self._total_bytes > self._config.max_size_bytes and self._cache:
            oldest_key = min(self._cache, key=lambda k: self._cache[k].cached_at)
            evicted = self._remove(oldest_key)
            logger.debug(
                "Evicted cache entry %s (%d bytes) to stay under %d bytes",
                oldest_key,
                evicted.size_bytes if evicted else 0,
                self._config.max_size_bytes,
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value for *key*, or *default* on a miss.

        Expired entries are removed on access.  A payload that no longer
        decodes is dropped and reported as a miss.
        """
        if not self._config.enabled:
            return default

        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return default
            if entry.is_expired:
                self._remove(key)
                self._misses += 1
                return default
            try:
                value = json.loads(entry.payload)
            except ValueError as exc:
                logger.warning("Dropping undecodable cache entry %s: %s", key, exc)
                self._remove(key)
                self._misses += 1
                return default
            self._hits += 1
            return value

    def has(self, key: str) -> bool:
        """Return ``True`` if *key* holds a live entry (no stats recorded)."""
        if not self._config.enabled:
            return False
        with self._lock:
            entry = self._cache.get(key)
            return entry is not None and not entry.is_expired

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store *value* under *key*.

        :param key: Cache key.
        :param value: Any JSON-serialisable value (``None`` included).
        :param ttl: Per-entry TTL in seconds; defaults to the config TTL.
        :returns: ``True`` if the value is in the cache afterwards.
        """
        if not self._config.enabled:
            return False

        try:
            payload = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as exc:
            logger.warning("Not caching %s: value is not JSON-serialisable (%s)", key, exc)
            return False

        now = time.time()
        entry = CacheEntry(
            key=key,
            payload=payload,
            size_bytes=len(payload.encode("utf-8")),
            cached_at=now,
            expires_at=now + (ttl if ttl is not None else self._config.ttl_seconds),
        )

        with self._lock:
            self._remove(key)
            self._cache[key] = entry
            self._total_bytes += entry.size_bytes
            self._persist(entry)
            self._evict_over_budget()
            stored = key in self._cache

        if not stored:
            logger.warning(
                "Cache entry %s (%d bytes) exceeds the %d byte budget on its own",
                key,
                entry.size_bytes,
                self._config.max_size_bytes,
            )
        return stored

    def delete(self, key: str) -> bool:
        """Remove *key*; returns ``True`` if something was removed."""
        if not self._config.enabled:
            return False
        with self._lock:
            return self._remove(key) is not None

    def clear(self) -> int:
        """Remove every entry.

        :returns: Number of entries removed.
        """
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._total_bytes = 0
            self._clear_db()
        if count:
            logger.debug("Cleared %d stage cache entries", count)
        return count

    def cleanup(self) -> int:
        """Remove all expired entries.

        :returns: Number of expired entries removed.
        """
        with self._lock:
            expired = [k for k, e in self._cache.items() if e.is_expired]
            for key in expired:
                self._remove(key)
        if expired:
            logger.debug("Cleaned up %d expired stage cache entries", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Return cache statistics.

        :returns: Dict with ``count``, ``hit_count``, ``miss_count``,
            ``hit_rate``, ``approx_size_bytes``, ``max_size_bytes`` and
            ``enabled`` keys.
        """
        with self._lock:
            total_requests = self._hits + self._misses
            return {
                "enabled": self._config.enabled,
                "count": len(self._cache),
                "hit_count": self._hits,
                "miss_count": self._misses,
                "hit_rate": self._hits / total_requests if total_requests else 0.0,
                "approx_size_bytes": self._total_bytes,
                "max_size_bytes": self._config.max_size_bytes,
            }

    def close(self) -> None:
        """Close the SQLite connection if one is open."""
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                logger.warning("Failed to close stage cache database: %s", exc)
            self._conn = None


__all__ = [
    "CacheEntry",
    "StageCache",
    "StageCacheConfig",
    "result_cache_key",
    "stage_cache_key",
]
