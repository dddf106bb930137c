import asyncio
import logging
import os
import time
from contextlib import suppress
from datetime import datetime, timezone
from time import monotonic

import aiosqlite
from pydantic import ValidationError

from .exceptions import QueueUnavailable
from .models import DeadLetter, DeliveryTask, QueueDepth, QueueMessage

log = logging.getLogger("queue")

POLL_INTERVAL = 0.05


def _ts(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


# one table for every queue name; the dead-letter queue is just another name
class DeliveryQueue:
    def __init__(
        self,
        db_path: str = "data/queue.db",
        name: str = "jetstream-events",
        dead_letter_name: str = "jetstream-events-dlq",
        max_attempts: int = 3,
        visibility_timeout: float = 60.0,
        retry_delay: float = 0.0,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.db_path = db_path
        self.name = name
        self.dead_letter_name = dead_letter_name
        self.max_attempts = max_attempts
        self.visibility_timeout = visibility_timeout
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # serialize writes
        self._wakeup = asyncio.Event()

    async def init(self) -> None:
        if self._db is not None:
            return
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute("PRAGMA synchronous=NORMAL;")
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                queue TEXT NOT NULL,
                body TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                visible_at REAL NOT NULL,
                enqueued_at REAL NOT NULL,
                failed_at REAL,
                last_error TEXT
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS messages_ready ON messages(queue, visible_at, id)"
        )
        await self._db.commit()
        log.info("DeliveryQueue %s initialized at %s", self.name, self.db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise QueueUnavailable(f"queue {self.name} not initialized")
        return self._db

    async def send(self, task: DeliveryTask) -> int:
        db = self._conn()
        body = task.model_dump_json(by_alias=True)
        now = time.time()
        try:
            async with self._lock:
                cur = await db.execute(
                    "INSERT INTO messages(queue, body, attempts, visible_at, enqueued_at) "
                    "VALUES (?, ?, 0, ?, ?)",
                    (self.name, body, now, now),
                )
                await db.commit()
        except (aiosqlite.Error, ValueError) as e:
            # ValueError: connection closed underneath us
            raise QueueUnavailable(f"enqueue to {self.name} failed: {e}") from e
        self._wakeup.set()
        return cur.lastrowid

    async def _dead_letter(self, db: aiosqlite.Connection, msg_id: int, error: str | None, now: float) -> None:
        await db.execute(
            "UPDATE messages SET queue = ?, last_error = ?, failed_at = ?, visible_at = ? WHERE id = ?",
            (self.dead_letter_name, error, now, now, msg_id),
        )
        log.warning("message %d moved to %s: %s", msg_id, self.dead_letter_name, error)

    async def _lease(self, limit: int) -> list[QueueMessage]:
        db = self._conn()
        now = time.time()
        leased: list[QueueMessage] = []
        async with self._lock:
            async with db.execute(
                "SELECT id, body, attempts FROM messages "
                "WHERE queue = ? AND visible_at <= ? ORDER BY id LIMIT ?",
                (self.name, now, limit),
            ) as cur:
                rows = await cur.fetchall()
            for msg_id, body, attempts in rows:
                if attempts >= self.max_attempts:
                    await self._dead_letter(db, msg_id, "lease expired on final attempt", now)
                    continue
                try:
                    task = DeliveryTask.model_validate_json(body)
                except ValidationError as e:
                    await self._dead_letter(db, msg_id, f"undecodable body: {e}", now)
                    continue
                await db.execute(
                    "UPDATE messages SET attempts = attempts + 1, visible_at = ? WHERE id = ?",
                    (now + self.visibility_timeout, msg_id),
                )
                leased.append(QueueMessage(id=msg_id, task=task, attempt=attempts + 1))
            await db.commit()
        return leased

    async def receive_batch(self, max_size: int, max_wait: float) -> list[QueueMessage]:
        """Block until at least one message is leased.

        Keeps collecting until max_size messages are leased or max_wait
        seconds have passed since the first one.
        """
        batch: list[QueueMessage] = []
        deadline: float | None = None
        while True:
            self._wakeup.clear()
            batch.extend(await self._lease(max_size - len(batch)))
            if len(batch) >= max_size:
                return batch
            timeout = self.poll_interval
            if batch:
                if deadline is None:
                    deadline = monotonic() + max_wait
                remaining = deadline - monotonic()
                if remaining <= 0:
                    return batch
                timeout = min(timeout, remaining)
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout)

    async def ack(self, message: QueueMessage) -> None:
        db = self._conn()
        async with self._lock:
            await db.execute(
                "DELETE FROM messages WHERE id = ? AND queue = ?", (message.id, self.name)
            )
            await db.commit()

    async def retry(self, message: QueueMessage, error: str | None = None) -> bool:
        """Release a failed message. Returns True if it was dead-lettered."""
        db = self._conn()
        now = time.time()
        dead = message.attempt >= self.max_attempts
        async with self._lock:
            if dead:
                await self._dead_letter(db, message.id, error, now)
            else:
                await db.execute(
                    "UPDATE messages SET visible_at = ?, last_error = ? WHERE id = ? AND queue = ?",
                    (now + self.retry_delay, error, message.id, self.name),
                )
            await db.commit()
        if not dead:
            self._wakeup.set()
        return dead

    async def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        db = self._conn()
        async with db.execute(
            "SELECT id, body, attempts, last_error, enqueued_at, failed_at FROM messages "
            "WHERE queue = ? ORDER BY id LIMIT ?",
            (self.dead_letter_name, limit),
        ) as cur:
            rows = await cur.fetchall()
        letters = []
        for msg_id, body, attempts, last_error, enqueued_at, failed_at in rows:
            try:
                task = DeliveryTask.model_validate_json(body)
            except ValidationError:
                task = None
            letters.append(DeadLetter(
                id=msg_id,
                task=task,
                body=body,
                attempts=attempts,
                last_error=last_error,
                enqueued_at=_ts(enqueued_at),
                failed_at=_ts(failed_at or enqueued_at),
            ))
        return letters

    async def requeue_dead_letters(self) -> int:
        """Move every dead letter back with a fresh attempt budget."""
        db = self._conn()
        now = time.time()
        async with self._lock:
            cur = await db.execute(
                "UPDATE messages SET queue = ?, attempts = 0, visible_at = ?, "
                "failed_at = NULL, last_error = NULL WHERE queue = ?",
                (self.name, now, self.dead_letter_name),
            )
            await db.commit()
        count = cur.rowcount
        if count:
            log.info("requeued %d dead letters onto %s", count, self.name)
            self._wakeup.set()
        return count

    async def depth(self) -> QueueDepth:
        db = self._conn()
        now = time.time()
        async with db.execute(
            "SELECT "
            "  SUM(CASE WHEN queue = ? AND visible_at <= ? THEN 1 ELSE 0 END), "
            "  SUM(CASE WHEN queue = ? AND visible_at > ? THEN 1 ELSE 0 END), "
            "  SUM(CASE WHEN queue = ? THEN 1 ELSE 0 END) "
            "FROM messages",
            (self.name, now, self.name, now, self.dead_letter_name),
        ) as cur:
            pending, in_flight, dead = await cur.fetchone()
        return QueueDepth(pending=pending or 0, in_flight=in_flight or 0, dead=dead or 0)
