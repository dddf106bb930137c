import asyncio
import json
import logging
import os
from typing import Any

import aiosqlite
from pydantic import ValidationError

from .config import STATS_KEY
from .exceptions import StateStoreError
from .models import StoredStats

log = logging.getLogger("state_store")


class StateStore:
    """Durable key/value records. The relay keeps exactly one: the stats."""

    def __init__(self, db_path: str = "data/state.db"):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # serialize writes

    async def init(self) -> None:
        if self._db is not None:
            return
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute("PRAGMA synchronous=NORMAL;")
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        await self._db.commit()
        log.info("StateStore initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StateStoreError("StateStore not initialized")
        return self._db

    async def get(self, key: str) -> Any | None:
        db = self._conn()
        async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        return json.loads(row[0]) if row else None

    async def put(self, key: str, value: Any) -> None:
        db = self._conn()
        async with self._lock:
            await db.execute(
                "INSERT INTO kv(key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, json.dumps(value)),
            )
            await db.commit()

    async def load_stats(self) -> StoredStats | None:
        try:
            data = await self.get(STATS_KEY)
        except json.JSONDecodeError:
            log.warning("stored stats are not valid JSON; starting from zero")
            return None
        if data is None:
            return None
        try:
            return StoredStats.model_validate(data)
        except ValidationError as e:
            log.warning("stored stats are malformed; starting from zero: %s", e)
            return None

    async def save_stats(self, stats: StoredStats) -> None:
        await self.put(STATS_KEY, stats.to_json_dict())
