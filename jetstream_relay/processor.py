import asyncio
import logging

from .config import STATS_FLUSH_EVERY
from .exceptions import QueueUnavailable
from .models import DeliveryTask, Event, StoredStats, utcnow
from .producer import QueueProducer
from .state_store import StateStore

log = logging.getLogger("processor")


class EventProcessor:
    # sole writer of the stats; a failed enqueue keeps its increments

    def __init__(self, store: StateStore, producer: QueueProducer, flush_every: int = STATS_FLUSH_EVERY):
        self.store = store
        self.producer = producer
        self.flush_every = flush_every
        self.stats = StoredStats()
        self.enqueue_failures = 0
        self._lock = asyncio.Lock()
        self._flushes: set[asyncio.Task] = set()

    @property
    def cursor(self) -> int:
        return self.stats.cursor

    async def load(self) -> None:
        stored = await self.store.load_stats()
        if stored is not None:
            self.stats = stored
            log.info(
                "loaded stats cursor=%d total_events=%d total_received=%d",
                stored.cursor, stored.total_events, stored.total_received,
            )

    async def process_event(self, event: Event) -> None:
        async with self._lock:
            await self._process(event)

    async def _process(self, event: Event) -> None:
        stats = self.stats
        stats.cursor = max(stats.cursor, event.time_us)
        stats.total_received += 1

        # identity/account dominate volume; no logging for them
        if event.kind != "commit":
            return

        stats.total_events += 1
        stats.last_event_time = utcnow()
        collection = event.collection
        if collection:
            stats.event_counts[collection] = stats.event_counts.get(collection, 0) + 1
            log.debug("processing %s event for collection %s", event.commit.operation, collection)

        task = DeliveryTask(event=event, queued_at=utcnow(), retry_count=0)
        try:
            await self.producer.enqueue(task)
        except QueueUnavailable as e:
            self.enqueue_failures += 1
            log.error("event %d not queued: %s", event.time_us, e.message)
        except Exception:
            self.enqueue_failures += 1
            log.exception("event %d not queued", event.time_us)

        if stats.total_events % self.flush_every == 0:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        task = asyncio.create_task(self._write(self.stats.model_copy(deep=True)))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def _write(self, snapshot: StoredStats) -> bool:
        try:
            await self.store.save_stats(snapshot)
            return True
        except Exception as e:
            log.warning("stats flush failed; next flush supersedes it: %s", e)
            return False

    async def drain(self) -> None:
        """Wait for background flushes already scheduled."""
        if self._flushes:
            await asyncio.gather(*list(self._flushes))

    async def flush(self) -> bool:
        async with self._lock:
            await self.drain()
            return await self._write(self.stats)

    async def get_stats(self) -> StoredStats:
        async with self._lock:
            await self.drain()
            await self._write(self.stats)
            return self.stats.model_copy(deep=True)

    async def reset_stats(self) -> None:
        async with self._lock:
            await self.drain()
            self.stats = StoredStats()
            await self._write(self.stats)
            log.info("stats reset")
