"""
Local Cache — persistent vault cache, in-process TTL layer and sessions.

``PersistentCache`` keeps decrypted vault data in SQLite keyed by blob
reference, enforces size/count/age limits and tracks hit/miss counters.
``MemoryCache`` is a short-lived in-process layer; ``HybridCache`` puts it
in front of the persistent store.

Security Note:
    Cached vault data is decrypted. The cache file must live in a
    directory only the owning user can read.
"""
import time
import sqlite3
import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

import orjson
from cachetools import TTLCache

from .exceptions import CacheError
from .models import CacheStats, SessionRecord, now_ms

logger = logging.getLogger("vaultstore.cache")

# Size eviction trims down to this fraction of the ceiling.
EVICTION_TARGET = 0.8

_SCHEMA = """
CREATE TABLE IF NOT EXISTS vaults (
    blob_ref TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    size INTEGER NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 1,
    last_accessed INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_vaults_timestamp ON vaults(timestamp);
CREATE INDEX IF NOT EXISTS idx_vaults_access_count ON vaults(access_count);
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    total_size INTEGER NOT NULL DEFAULT 0,
    vault_count INTEGER NOT NULL DEFAULT 0,
    hit_count INTEGER NOT NULL DEFAULT 0,
    miss_count INTEGER NOT NULL DEFAULT 0,
    last_sync INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS sessions (
    key TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    vault_id TEXT NOT NULL,
    token TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    permissions INTEGER NOT NULL DEFAULT 0
);
INSERT OR IGNORE INTO metadata (key) VALUES ('stats');
"""

_OLDEST_FIRST = """
SELECT blob_ref, size FROM vaults
ORDER BY timestamp ASC, last_accessed ASC, rowid ASC
"""

_UPSERT_VAULT = """
INSERT INTO vaults (blob_ref, data, timestamp, size, access_count, last_accessed)
VALUES (?, ?, ?, ?, 1, ?)
ON CONFLICT(blob_ref) DO UPDATE SET
    data = excluded.data,
    timestamp = excluded.timestamp,
    size = excluded.size,
    access_count = vaults.access_count + 1,
    last_accessed = excluded.last_accessed
"""


class VaultCache(Protocol):
    """Interface the storage service expects from a cache tier."""

    async def get_vault(self, blob_ref: str) -> Optional[dict]: ...

    async def set_vault(self, blob_ref: str, data: dict) -> None: ...

    async def delete_vault(self, blob_ref: str) -> bool: ...

    async def stats(self) -> CacheStats: ...


class PersistentCache:
    """SQLite-backed vault and session cache.

    The database is opened lazily on first use; :meth:`open` may be called
    any number of times. Calls run in a worker thread so the event loop
    is never blocked on disk I/O.

    Args:
        path: SQLite file path, or ``":memory:"``.
        max_size: Total cached bytes ceiling.
        max_entries: Maximum number of cached vaults.
        max_age: Entry lifetime in milliseconds.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        path: Union[str, Path] = ":memory:",
        max_size: int = 100 * 1024 * 1024,
        max_entries: int = 50,
        max_age: int = 24 * 60 * 60 * 1000,
        clock: Callable[[], int] = now_ms,
    ):
        self.path = str(path)
        self.max_size = max_size
        self.max_entries = max_entries
        self.max_age = max_age
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, clock: Callable[[], int] = now_ms) -> "PersistentCache":
        return cls(
            path=config.cache_path,
            max_size=config.cache_max_size,
            max_entries=config.cache_max_entries,
            max_age=config.cache_max_age_ms,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _open_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            try:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.executescript(_SCHEMA)
                conn.commit()
            except (sqlite3.Error, OSError) as err:
                raise CacheError(f"Cannot open cache at {self.path}: {err}") from err
            self._conn = conn
            logger.debug("Opened vault cache at %s", self.path)

    async def open(self) -> None:
        """Open the store and create the schema if missing. Idempotent."""
        if self._conn is None:
            await asyncio.to_thread(self._open_sync)

    def _close_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            conn = self._conn
            if conn is None:
                raise CacheError("Cache is closed")
            try:
                result = fn(conn, *args)
                conn.commit()
                return result
            except sqlite3.Error as err:
                conn.rollback()
                raise CacheError(f"Cache operation failed: {err}") from err

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        await self.open()
        return await asyncio.to_thread(self._call, fn, *args)

    # ------------------------------------------------------------------
    # Metadata helpers
    # ------------------------------------------------------------------

    def _sync_metadata(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """UPDATE metadata SET
                   total_size = (SELECT COALESCE(SUM(size), 0) FROM vaults),
                   vault_count = (SELECT COUNT(*) FROM vaults),
                   last_sync = ?
               WHERE key = 'stats'""",
            (self._clock(),),
        )

    @staticmethod
    def _count_lookup(conn: sqlite3.Connection, hit: bool) -> None:
        column = "hit_count" if hit else "miss_count"
        conn.execute(
            f"UPDATE metadata SET {column} = {column} + 1 WHERE key = 'stats'"
        )

    def _expired(self, timestamp: int, now: int) -> bool:
        return now - timestamp > self.max_age

    # ------------------------------------------------------------------
    # Vault entries
    # ------------------------------------------------------------------

    def _set_vault(
        self, conn: sqlite3.Connection, blob_ref: str, data: bytes, timestamp: int
    ) -> None:
        conn.execute(
            _UPSERT_VAULT,
            (blob_ref, data.decode("utf-8"), timestamp, len(data), self._clock()),
        )
        self._enforce_limits(conn)
        self._sync_metadata(conn)

    async def set_vault(
        self, blob_ref: str, data: dict, timestamp: Optional[int] = None
    ) -> None:
        """Insert or replace a cache entry, then enforce limits.

        Args:
            blob_ref: Blob reference the data was stored under.
            data: JSON-serializable vault data.
            timestamp: Insertion time override (epoch ms).
        """
        encoded = orjson.dumps(data)
        ts = self._clock() if timestamp is None else timestamp
        await self._run(self._set_vault, blob_ref, encoded, ts)

    def _get_vault(self, conn: sqlite3.Connection, blob_ref: str) -> Optional[str]:
        row = conn.execute(
            "SELECT data, timestamp FROM vaults WHERE blob_ref = ?", (blob_ref,)
        ).fetchone()
        if row is None:
            self._count_lookup(conn, hit=False)
            return None
        now = self._clock()
        if self._expired(row["timestamp"], now):
            conn.execute("DELETE FROM vaults WHERE blob_ref = ?", (blob_ref,))
            self._count_lookup(conn, hit=False)
            self._sync_metadata(conn)
            logger.debug("Cache entry %s expired", blob_ref)
            return None
        conn.execute(
            """UPDATE vaults SET access_count = access_count + 1, last_accessed = ?
               WHERE blob_ref = ?""",
            (now, blob_ref),
        )
        self._count_lookup(conn, hit=True)
        return row["data"]

    async def get_vault(self, blob_ref: str) -> Optional[dict]:
        """Return cached data, or None on a miss or expired entry."""
        raw = await self._run(self._get_vault, blob_ref)
        return orjson.loads(raw) if raw is not None else None

    def _delete_vault(self, conn: sqlite3.Connection, blob_ref: str) -> bool:
        cursor = conn.execute("DELETE FROM vaults WHERE blob_ref = ?", (blob_ref,))
        self._sync_metadata(conn)
        return cursor.rowcount > 0

    async def delete_vault(self, blob_ref: str) -> bool:
        return await self._run(self._delete_vault, blob_ref)

    def _enforce_limits(self, conn: sqlite3.Connection) -> int:
        evicted = 0
        total = conn.execute("SELECT COALESCE(SUM(size), 0) FROM vaults").fetchone()[0]
        if total > self.max_size:
            target = self.max_size * EVICTION_TARGET
            for row in conn.execute(_OLDEST_FIRST).fetchall():
                if total <= target:
                    break
                conn.execute("DELETE FROM vaults WHERE blob_ref = ?", (row["blob_ref"],))
                total -= row["size"]
                evicted += 1
        count = conn.execute("SELECT COUNT(*) FROM vaults").fetchone()[0]
        if count > self.max_entries:
            excess = count - self.max_entries
            for row in conn.execute(_OLDEST_FIRST).fetchmany(excess):
                conn.execute("DELETE FROM vaults WHERE blob_ref = ?", (row["blob_ref"],))
                evicted += 1
        if evicted:
            logger.info("Evicted %d cache entr(ies)", evicted)
        return evicted

    async def enforce_limits(self) -> int:
        """Evict oldest entries until size and count ceilings hold.

        Returns:
            Number of evicted entries.
        """
        def run(conn: sqlite3.Connection) -> int:
            evicted = self._enforce_limits(conn)
            self._sync_metadata(conn)
            return evicted
        return await self._run(run)

    def _clean_expired(self, conn: sqlite3.Connection) -> int:
        cursor = conn.execute(
            "DELETE FROM vaults WHERE ? - timestamp > ?",
            (self._clock(), self.max_age),
        )
        self._sync_metadata(conn)
        return cursor.rowcount

    async def clean_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        return await self._run(self._clean_expired)

    def _stats(self, conn: sqlite3.Connection) -> CacheStats:
        agg = conn.execute(
            """SELECT COALESCE(SUM(size), 0) AS total_size,
                      COUNT(*) AS vault_count,
                      COALESCE(MIN(timestamp), 0) AS oldest,
                      COALESCE(MAX(timestamp), 0) AS newest,
                      COALESCE(AVG(access_count), 0) AS avg_access
               FROM vaults"""
        ).fetchone()
        meta = conn.execute(
            "SELECT hit_count, miss_count, last_sync FROM metadata WHERE key = 'stats'"
        ).fetchone()
        return CacheStats(
            total_size=agg["total_size"],
            vault_count=agg["vault_count"],
            hit_count=meta["hit_count"],
            miss_count=meta["miss_count"],
            oldest_entry=agg["oldest"],
            newest_entry=agg["newest"],
            average_access_count=agg["avg_access"],
            last_sync=meta["last_sync"],
        )

    async def stats(self) -> CacheStats:
        return await self._run(self._stats)

    async def most_accessed(self, limit: int = 10) -> list[str]:
        """Blob references ordered by access count, most used first."""
        def run(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute(
                """SELECT blob_ref FROM vaults
                   ORDER BY access_count DESC, last_accessed DESC LIMIT ?""",
                (limit,),
            ).fetchall()
            return [row["blob_ref"] for row in rows]
        return await self._run(run)

    async def optimize(self) -> dict:
        """Clean expired entries and enforce limits, reporting the effect."""
        before = await self.stats()
        expired = await self.clean_expired()
        await self.enforce_limits()
        after = await self.stats()
        return {
            "expired_cleaned": expired,
            "size_before": before.total_size,
            "size_after": after.total_size,
            "count_before": before.vault_count,
            "count_after": after.vault_count,
            "hit_rate": after.hit_rate,
        }

    async def clear(self) -> None:
        """Remove all vault entries, sessions and counters."""
        def run(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM vaults")
            conn.execute("DELETE FROM sessions")
            conn.execute(
                """UPDATE metadata SET total_size = 0, vault_count = 0,
                       hit_count = 0, miss_count = 0, last_sync = ?
                   WHERE key = 'stats'""",
                (self._clock(),),
            )
        await self._run(run)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def set_session(self, key: str, record: SessionRecord) -> None:
        def run(conn: sqlite3.Connection) -> None:
            conn.execute(
                """INSERT OR REPLACE INTO sessions
                   (key, user_id, vault_id, token, expires_at, permissions)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    key, record.user_id, record.vault_id, record.token,
                    record.expires_at, int(record.permissions),
                ),
            )
        await self._run(run)

    async def get_session(self, key: str) -> Optional[SessionRecord]:
        """Return a live session; expired sessions are deleted and hidden."""
        def run(conn: sqlite3.Connection) -> Optional[SessionRecord]:
            row = conn.execute(
                "SELECT * FROM sessions WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            record = SessionRecord(
                user_id=row["user_id"],
                vault_id=row["vault_id"],
                token=row["token"],
                expires_at=row["expires_at"],
                permissions=row["permissions"],
            )
            if record.expired(self._clock()):
                conn.execute("DELETE FROM sessions WHERE key = ?", (key,))
                return None
            return record
        return await self._run(run)

    async def delete_session(self, key: str) -> None:
        await self._run(
            lambda conn: conn.execute("DELETE FROM sessions WHERE key = ?", (key,))
        )


class MemoryCache:
    """In-process bounded TTL cache (seconds-based)."""

    def __init__(
        self,
        maxsize: int = 100,
        ttl: float = 5 * 60,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._store: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    @classmethod
    def from_config(cls, config) -> "MemoryCache":
        return cls(maxsize=config.memory_cache_size, ttl=config.memory_cache_ttl)

    def get(self, key: str) -> Any:
        return self._store.get(key)

    def set(self, key: str, value: Any) -> None:
        self._store[key] = value

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)


class HybridCache:
    """Memory tier in front of a persistent cache.

    Lookup order for ``get_vault()``: memory → persistent store → miss.
    Persistent hits populate the memory tier.
    """

    def __init__(self, persistent: PersistentCache, memory: Optional[MemoryCache] = None):
        self.persistent = persistent
        self.memory = memory or MemoryCache()

    async def get_vault(self, blob_ref: str) -> Optional[dict]:
        found = self.memory.get(blob_ref)
        if found is not None:
            return found
        found = await self.persistent.get_vault(blob_ref)
        if found is not None:
            self.memory.set(blob_ref, found)
        return found

    async def set_vault(self, blob_ref: str, data: dict) -> None:
        self.memory.set(blob_ref, data)
        await self.persistent.set_vault(blob_ref, data)

    async def delete_vault(self, blob_ref: str) -> bool:
        self.memory.delete(blob_ref)
        return await self.persistent.delete_vault(blob_ref)

    async def stats(self) -> CacheStats:
        return await self.persistent.stats()

    async def clear(self) -> None:
        self.memory.clear()
        await self.persistent.clear()

    async def set_session(self, key: str, record: SessionRecord) -> None:
        await self.persistent.set_session(key, record)

    async def get_session(self, key: str) -> Optional[SessionRecord]:
        return await self.persistent.get_session(key)

    async def delete_session(self, key: str) -> None:
        await self.persistent.delete_session(key)
