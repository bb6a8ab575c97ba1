from __future__ import annotations
import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Union

SCHEMA = r"""
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS alerts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts REAL NOT NULL,
  tier TEXT,
  message TEXT NOT NULL,
  instance_id TEXT
);
"""


class KeyValueStore:
    """Durable string key/value records plus a small alert history, backed by sqlite."""

    def __init__(self, path: Union[str, Path] = "./posturewatch.db"):
        self.path = str(path)
        self._conn: Optional[sqlite3.Connection] = None
        # the connection is shared with worker threads (asyncio.to_thread, uvicorn)
        self._lock = threading.Lock()

    def get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # Key/value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.get_conn().execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        self.set_many({key: value})

    def set_many(self, items: Dict[str, str]) -> None:
        """Write all items in one transaction."""
        now = time.time()
        with self._lock:
            conn = self.get_conn()
            with conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?,?,?)",
                    [(k, v, now) for k, v in items.items()],
                )

    def delete(self, *keys: str) -> None:
        with self._lock:
            conn = self.get_conn()
            with conn:
                conn.executemany("DELETE FROM kv WHERE key=?", [(k,) for k in keys])

    # Alert history

    def insert_alert(self, ts: float, message: str, tier: Optional[str] = None, instance_id: str = "") -> None:
        with self._lock:
            conn = self.get_conn()
            with conn:
                conn.execute(
                    "INSERT INTO alerts (ts, tier, message, instance_id) VALUES (?,?,?,?)",
                    (ts, tier, message, instance_id),
                )

    def recent_alerts(self, limit: int = 20) -> List[dict]:
        with self._lock:
            rows = self.get_conn().execute(
                "SELECT ts, tier, message, instance_id FROM alerts ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [{"ts": r[0], "tier": r[1], "message": r[2], "instance_id": r[3]} for r in rows]
