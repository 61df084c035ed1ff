"""SQLite cache for land and urban validation results."""
from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class CacheWriteFailure(RuntimeError):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def coordinate_hash(lat: float, lng: float) -> str:
    """MD5 of the coordinate pair rounded to 5 decimals (about 1 m)."""
    raw = f"{round(float(lat), 5):.5f},{round(float(lng), 5):.5f}".encode("utf-8")
    return hashlib.md5(raw).hexdigest()


class ValidationCache:
    def __init__(
        self,
        db_path: str,
        commit_every: int = 50,
        clock: Optional[Clock] = None,
    ) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.clock = clock or utc_now
        self._lock = threading.Lock()
        self._pending_writes = 0
        self._commit_every = max(1, int(commit_every))
        self._configure_conn()
        self._init_db()

    def _configure_conn(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            pass
        try:
            cur.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.DatabaseError:
            pass

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS validation_cache (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                lat REAL,
                lng REAL,
                result_json TEXT,
                raw_json TEXT,
                created_at TEXT,
                expires_at TEXT,
                PRIMARY KEY (namespace, key)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_validation_cache_expires ON validation_cache (expires_at)"
        )
        self.conn.commit()

    def _mark_dirty(self) -> None:
        self._pending_writes += 1
        if self._pending_writes >= self._commit_every:
            self._commit_locked()

    def _commit_locked(self) -> None:
        if self._pending_writes:
            self.conn.commit()
            self._pending_writes = 0

    def commit(self) -> None:
        with self._lock:
            self._commit_locked()

    def close(self) -> None:
        self.commit()
        self.conn.close()

    def get(self, namespace: str, lat: float, lng: float) -> Optional[Dict[str, Any]]:
        """Return the cached result, or None on a miss. Stale rows are evicted."""
        key = coordinate_hash(lat, lng)
        now = self.clock()
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT result_json, expires_at FROM validation_cache WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            row = cur.fetchone()
            if not row:
                return None
            expires_at = datetime.fromisoformat(row["expires_at"])
            if expires_at <= now:
                cur.execute(
                    "DELETE FROM validation_cache WHERE namespace = ? AND key = ?",
                    (namespace, key),
                )
                self._mark_dirty()
                return None
            return json.loads(row["result_json"])

    def put(
        self,
        namespace: str,
        lat: float,
        lng: float,
        result: Dict[str, Any],
        ttl: timedelta,
        raw: Optional[Dict[str, Any]] = None,
    ) -> None:
        key = coordinate_hash(lat, lng)
        now = self.clock()
        try:
            with self._lock:
                cur = self.conn.cursor()
                cur.execute(
                    """
                    INSERT OR REPLACE INTO validation_cache
                        (namespace, key, lat, lng, result_json, raw_json, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        namespace,
                        key,
                        round(float(lat), 5),
                        round(float(lng), 5),
                        json.dumps(result, sort_keys=True),
                        json.dumps(raw) if raw is not None else None,
                        now.isoformat(),
                        (now + ttl).isoformat(),
                    ),
                )
                self._mark_dirty()
        except (sqlite3.Error, TypeError, ValueError) as exc:
            raise CacheWriteFailure(f"Failed to cache {namespace} result for {key}: {exc}") from exc

    def get_raw(self, namespace: str, lat: float, lng: float) -> Optional[Dict[str, Any]]:
        key = coordinate_hash(lat, lng)
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT raw_json FROM validation_cache WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            row = cur.fetchone()
        if not row or row["raw_json"] is None:
            return None
        return json.loads(row["raw_json"])

    def purge_expired(self) -> int:
        now = self.clock().isoformat()
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("DELETE FROM validation_cache WHERE expires_at <= ?", (now,))
            removed = cur.rowcount
            self.conn.commit()
            self._pending_writes = 0
        if removed:
            logger.info("Purged %s expired validation cache rows", removed)
        return removed

    def count(self, namespace: Optional[str] = None) -> int:
        with self._lock:
            cur = self.conn.cursor()
            if namespace is None:
                cur.execute("SELECT COUNT(*) FROM validation_cache")
            else:
                cur.execute("SELECT COUNT(*) FROM validation_cache WHERE namespace = ?", (namespace,))
            return int(cur.fetchone()[0])


class CacheJanitor:
    """Runs purge_expired() on a timer, independently of pipeline runs."""

    def __init__(self, cache: ValidationCache, interval_seconds: float = 3600.0) -> None:
        self.cache = cache
        self.interval_seconds = float(interval_seconds)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="cache-janitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> int:
        try:
            return self.cache.purge_expired()
        except sqlite3.Error as exc:
            logger.warning("Cache purge failed: %s", exc)
            return 0

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
