"""SQLite-backed persistent wallet store."""

import asyncio
import json
import logging
import sqlite3
import time
from pathlib import Path

from claimfleet.constants import WalletStatus
from claimfleet.store import _normalize, summarize

log = logging.getLogger("claimfleet.sqlite_store")


class SQLiteWalletStore:
    """Persistent store backed by SQLite.

    One row per secret; ``status`` and ``address`` are broken out into columns
    for filtering, the full record lives in the JSON ``data`` column. ``rowid``
    order is insertion order, which is the order wallets get assigned in.
    """

    def __init__(self, db_path: str | Path = "wallets.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS wallets (
                    secret TEXT PRIMARY KEY,
                    address TEXT,
                    status TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    data TEXT NOT NULL  -- JSON blob for all fields
                );
                CREATE INDEX IF NOT EXISTS idx_wallet_status ON wallets(status);
                CREATE INDEX IF NOT EXISTS idx_wallet_address ON wallets(address);
                """
            )
            conn.commit()
            log.debug("SQLite database initialized at %s", self.db_path)
        finally:
            conn.close()

    async def find(self, secret: str) -> dict | None:
        async with self._lock:
            conn = self._connect()
            try:
                row = conn.execute("SELECT data FROM wallets WHERE secret = ?", (secret,)).fetchone()
                return json.loads(row[0]) if row else None
            finally:
                conn.close()

    async def upsert(self, secret: str, **fields) -> dict:
        """Merge ``fields`` into the stored record; never drops existing keys."""
        if not secret:
            raise ValueError("upsert() requires a secret")
        async with self._lock:
            conn = self._connect()
            try:
                row = conn.execute("SELECT data FROM wallets WHERE secret = ?", (secret,)).fetchone()
                now = time.time()
                rec = json.loads(row[0]) if row else {"created_at": now}
                prev = rec.get("status")
                rec.update(_normalize(fields))
                rec["secret"] = secret
                rec["updated_at"] = now
                conn.execute(
                    """
                    INSERT INTO wallets (secret, address, status, created_at, updated_at, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(secret) DO UPDATE SET
                        address = excluded.address,
                        status = excluded.status,
                        updated_at = excluded.updated_at,
                        data = excluded.data
                    """,
                    (secret, rec.get("address"), rec.get("status"), rec["created_at"], now, json.dumps(rec)),
                )
                conn.commit()
                if prev != rec.get("status"):
                    log.debug("%s --> %s  %s", prev, rec.get("status"), rec.get("address"))
                return rec
            finally:
                conn.close()

    async def list_by_status(self, *statuses: WalletStatus | str) -> list[dict]:
        wanted = [str(s) for s in statuses]
        if not wanted:
            return []
        async with self._lock:
            conn = self._connect()
            try:
                placeholders = ",".join("?" * len(wanted))
                cursor = conn.execute(
                    f"SELECT data FROM wallets WHERE status IN ({placeholders}) ORDER BY rowid", wanted
                )
                return [json.loads(row[0]) for row in cursor.fetchall()]
            finally:
                conn.close()

    async def list_all(self) -> list[dict]:
        async with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("SELECT data FROM wallets ORDER BY rowid")
                return [json.loads(row[0]) for row in cursor.fetchall()]
            finally:
                conn.close()

    async def summary_counts(self) -> dict[str, int]:
        async with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("SELECT status, COUNT(*) FROM wallets GROUP BY status")
                counts = dict(cursor.fetchall())
            finally:
                conn.close()
        out = summarize(())
        for status, n in counts.items():
            if status in out:
                out[status] = n
        return out

    async def clear(self) -> int:
        async with self._lock:
            conn = self._connect()
            try:
                n = conn.execute("DELETE FROM wallets").rowcount
                conn.commit()
            finally:
                conn.close()
        log.info("Cleared %d wallet record(s) from %s", n, self.db_path)
        return n
