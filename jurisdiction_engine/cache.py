"""Two-tier ZIP result cache: in-process LRU in front of a shared SQLite table."""

import json
import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Optional, Tuple

from .models import CHAMBERS, ZipLookupResult

logger = logging.getLogger(__name__)

_CHAMBER_TAGS = {"congressional": "cd", "state_senate": "sd", "state_assembly": "ad"}


def district_tags(result: ZipLookupResult) -> str:
    """'|cd:7|sd:6|ad:9|ad:7|': every primary and alternate district, for LIKE matching."""
    tags = []
    for chamber in CHAMBERS:
        numbers = [result.district(chamber)] + list(result.alternate_districts.get(chamber, ()))
        for n in numbers:
            if n is not None:
                tags.append(f"{_CHAMBER_TAGS[chamber]}:{n}")
    return "|" + "|".join(tags) + "|" if tags else ""


def _in_district(result: ZipLookupResult, chamber: str, district: int) -> bool:
    return result.district(chamber) == district or district in result.alternate_districts.get(chamber, ())


class MemoryCache:
    """Bounded LRU with per-entry expiry. Thread-safe."""

    def __init__(self, max_entries: int = 5000):
        self.max_entries = max_entries
        self._data: "OrderedDict[str, Tuple[float, ZipLookupResult]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[ZipLookupResult]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            expires_at, result = item
            if expires_at <= time.time():
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return result

    def set(self, key: str, result: ZipLookupResult, expires_at: float):
        if self.max_entries <= 0:
            return
        with self._lock:
            self._data[key] = (expires_at, result)
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def delete_where(self, predicate: Callable[[str, ZipLookupResult], bool]) -> int:
        with self._lock:
            doomed = [k for k, (_, r) in self._data.items() if predicate(k, r)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def clear(self) -> int:
        with self._lock:
            n = len(self._data)
            self._data.clear()
            return n

    def __len__(self) -> int:
        return len(self._data)


class JurisdictionCache:
    """SQLite cache for ZIP lookup results, fronted by a MemoryCache."""

    def __init__(self, db_path: Path, memory_size: int = 5000):
        self.db_path = Path(db_path)
        self.memory = MemoryCache(memory_size)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self.hits = 0
        self.memory_hits = 0
        self.misses = 0
        self._init_db()

    def _init_db(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS zip_cache (
                zip_code TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                districts TEXT NOT NULL DEFAULT '',
                source TEXT NOT NULL,
                dataset_version TEXT NOT NULL DEFAULT '',
                result_json TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_zc_expires ON zip_cache(expires_at)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_zc_state ON zip_cache(state)")
        self._conn.commit()

    def get(self, zip_code: str) -> Optional[ZipLookupResult]:
        """Get cached result for ZIP, or None if not cached / expired."""
        result = self.memory.get(zip_code)
        if result is not None:
            self.hits += 1
            self.memory_hits += 1
            return result

        with self._lock:
            row = self._conn.execute(
                "SELECT result_json, expires_at FROM zip_cache WHERE zip_code = ? AND expires_at > ?",
                (zip_code, time.time()),
            ).fetchone()
        if not row:
            self.misses += 1
            return None
        try:
            result = ZipLookupResult.from_dict(json.loads(row[0]))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Cache: dropping unreadable entry for {zip_code}: {e}")
            self.invalidate(zip_code)
            self.misses += 1
            return None
        self.memory.set(zip_code, result, row[1])
        self.hits += 1
        return result

    def set(self, zip_code: str, result: ZipLookupResult, ttl_seconds: float):
        """Cache a result. A non-positive TTL means do not cache."""
        if ttl_seconds <= 0:
            return
        now = time.time()
        expires = now + ttl_seconds
        result_json = json.dumps(result.to_dict())
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO zip_cache "
                "(zip_code, state, districts, source, dataset_version, result_json, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (zip_code, result.state, district_tags(result), result.source.value,
                 result.dataset_version, result_json, now, expires),
            )
            self._conn.commit()
        self.memory.set(zip_code, result, expires)

    def _delete(self, where: str, params: tuple) -> int:
        with self._lock:
            deleted = self._conn.execute(f"DELETE FROM zip_cache WHERE {where}", params).rowcount
            self._conn.commit()
        return deleted

    def invalidate(self, zip_code: str) -> int:
        """Remove a cached result."""
        deleted = self._delete("zip_code = ?", (zip_code,))
        self.memory.delete_where(lambda k, _: k == zip_code)
        return deleted

    def invalidate_state(self, state: str) -> int:
        deleted = self._delete("state = ?", (state,))
        self.memory.delete_where(lambda _, r: r.state == state)
        logger.info(f"Cache: invalidated {deleted} entries for {state}")
        return deleted

    def invalidate_district(self, chamber: str, district: int, state: Optional[str] = None) -> int:
        """Drop every ZIP whose primary or alternate district matches (redistricting)."""
        if chamber not in _CHAMBER_TAGS:
            raise ValueError(f"Unknown chamber '{chamber}'")
        tag = f"%|{_CHAMBER_TAGS[chamber]}:{int(district)}|%"
        if state:
            deleted = self._delete("districts LIKE ? AND state = ?", (tag, state))
        else:
            deleted = self._delete("districts LIKE ?", (tag,))
        self.memory.delete_where(
            lambda _, r: (state is None or r.state == state) and _in_district(r, chamber, district)
        )
        logger.info(f"Cache: invalidated {deleted} entries for {chamber} district {district}")
        return deleted

    def invalidate_other_versions(self, version: str) -> int:
        """Drop results produced by any reference dataset version other than this one."""
        deleted = self._delete("dataset_version != ?", (version,))
        self.memory.delete_where(lambda _, r: r.dataset_version != version)
        if deleted:
            logger.info(f"Cache: invalidated {deleted} entries from other dataset versions")
        return deleted

    def clear(self) -> int:
        deleted = self._delete("1 = 1", ())
        self.memory.clear()
        return deleted

    def clear_expired(self) -> int:
        """Remove all expired entries."""
        deleted = self._delete("expires_at <= ?", (time.time(),))
        if deleted:
            logger.info(f"Cache: cleared {deleted} expired entries")
        return deleted

    @property
    def size(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM zip_cache").fetchone()
        return row[0] if row else 0

    @property
    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "memory_hits": self.memory_hits,
            "misses": self.misses,
            "hit_rate": f"{self.hits / total * 100:.1f}%" if total else "N/A",
            "memory_entries": len(self.memory),
            "persistent_entries": self.size,
        }

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None
