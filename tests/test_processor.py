import os
import random

import pytest

from jetstream_relay.exceptions import QueueUnavailable
from jetstream_relay.models import Event, StoredStats
from jetstream_relay.processor import EventProcessor
from jetstream_relay.state_store import StateStore


class RecordingProducer:
    def __init__(self, fail=False):
        self.tasks = []
        self.fail = fail

    async def enqueue(self, task):
        if self.fail:
            raise QueueUnavailable("queue is down")
        self.tasks.append(task)
        return len(self.tasks)


async def open_store(temp_db_dir, name="state.db"):
    store = StateStore(db_path=os.path.join(temp_db_dir, name))
    await store.init()
    return store


def ev(event_factory, **kw):
    return Event.model_validate(event_factory(**kw))


@pytest.mark.asyncio
async def test_mixed_kinds_scenario(temp_db_dir, event_factory):
    """account, commit, identity -> only the commit is counted and queued."""
    store = await open_store(temp_db_dir)
    producer = RecordingProducer()
    proc = EventProcessor(store, producer)
    try:
        await proc.process_event(ev(event_factory, kind="account", time_us=50))
        await proc.process_event(ev(event_factory, kind="commit", time_us=100, collection="app.bsky.feed.post"))
        await proc.process_event(ev(event_factory, kind="identity", time_us=150))

        stats = proc.stats
        assert stats.total_received == 3
        assert stats.total_events == 1
        assert stats.cursor == 150
        assert stats.event_counts == {"app.bsky.feed.post": 1}
        assert len(producer.tasks) == 1
        task = producer.tasks[0]
        assert task.event.time_us == 100
        assert task.retry_count == 0
        assert task.queued_at is not None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_counters_hold_over_random_stream(temp_db_dir, event_factory):
    """cursor is the max time_us seen; totals and per-collection counts add up."""
    store = await open_store(temp_db_dir)
    proc = EventProcessor(store, RecordingProducer())
    rng = random.Random(7)
    collections = ["app.bsky.feed.post", "app.bsky.feed.like", "work.doing.goal"]
    t = 1_000_000
    seen_max = 0
    commits = 0
    per_collection = {}
    try:
        for i in range(250):
            # occasional step back, like a replayed window after reconnect
            t = t + rng.randint(1, 50) if rng.random() > 0.1 else t - rng.randint(1, 500)
            kind = rng.choice(["commit", "commit", "identity", "account"])
            coll = rng.choice(collections)
            await proc.process_event(ev(event_factory, kind=kind, time_us=t, collection=coll))
            seen_max = max(seen_max, t)
            if kind == "commit":
                commits += 1
                per_collection[coll] = per_collection.get(coll, 0) + 1
            assert proc.stats.cursor == seen_max
        stats = proc.stats
        assert stats.total_received == 250
        assert stats.total_events == commits
        assert stats.total_events <= stats.total_received
        assert stats.event_counts == per_collection
        assert sum(stats.event_counts.values()) == stats.total_events
        await proc.drain()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_enqueue_failure_keeps_stats(temp_db_dir, event_factory):
    """A rejected enqueue is logged; the event still counts as processed."""
    store = await open_store(temp_db_dir)
    proc = EventProcessor(store, RecordingProducer(fail=True))
    try:
        await proc.process_event(ev(event_factory, kind="commit", time_us=10))
        await proc.process_event(ev(event_factory, kind="commit", time_us=20))
        assert proc.stats.total_events == 2
        assert proc.stats.cursor == 20
        assert proc.enqueue_failures == 2
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_flushes_every_hundred_commits(temp_db_dir, event_factory):
    """Stats reach the store on the 100th accepted event, not before."""
    store = await open_store(temp_db_dir)
    proc = EventProcessor(store, RecordingProducer())
    try:
        for i in range(1, 100):
            await proc.process_event(ev(event_factory, kind="commit", time_us=i))
        # skipped kinds never trigger a flush
        for i in range(100, 150):
            await proc.process_event(ev(event_factory, kind="identity", time_us=i))
        await proc.drain()
        assert await store.load_stats() is None

        await proc.process_event(ev(event_factory, kind="commit", time_us=200))
        await proc.drain()
        saved = await store.load_stats()
        assert saved.total_events == 100
        assert saved.total_received == 150
        assert saved.cursor == 200
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_get_stats_persists_on_read(temp_db_dir, event_factory):
    store = await open_store(temp_db_dir)
    proc = EventProcessor(store, RecordingProducer())
    try:
        await proc.process_event(ev(event_factory, kind="commit", time_us=42, collection="blue.2048.game"))
        stats = await proc.get_stats()
        saved = await store.load_stats()
        assert saved.model_dump() == stats.model_dump()
        assert saved.event_counts == {"blue.2048.game": 1}
        # the returned record is a snapshot
        stats.total_events = 999
        assert proc.stats.total_events == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_reset_zeroes_everything(temp_db_dir, event_factory):
    """After reset all counters and the cursor are zero, in memory and stored."""
    store = await open_store(temp_db_dir)
    proc = EventProcessor(store, RecordingProducer())
    try:
        for i in range(1, 6):
            await proc.process_event(ev(event_factory, kind="commit", time_us=i * 1000))
        await proc.reset_stats()
        await proc.reset_stats()
        for stats in (proc.stats, await store.load_stats()):
            assert stats.cursor == 0
            assert stats.total_events == 0
            assert stats.total_received == 0
            assert stats.event_counts == {}
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_load_resumes_from_store(temp_db_dir):
    store = await open_store(temp_db_dir)
    try:
        await store.save_stats(StoredStats(cursor=1_700_000_000_000_000, total_events=3, total_received=9,
                                           event_counts={"app.bsky.feed.post": 3}))
        proc = EventProcessor(store, RecordingProducer())
        await proc.load()
        assert proc.cursor == 1_700_000_000_000_000
        assert proc.stats.total_received == 9
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_storage_failure_is_not_fatal(temp_db_dir, event_factory):
    """With the store gone, processing and reads keep working from memory."""
    store = await open_store(temp_db_dir)
    proc = EventProcessor(store, RecordingProducer(), flush_every=2)
    await store.close()
    for i in range(1, 5):
        await proc.process_event(ev(event_factory, kind="commit", time_us=i))
    await proc.drain()
    stats = await proc.get_stats()
    assert stats.total_events == 4
    assert await proc.flush() is False


@pytest.mark.asyncio
async def test_corrupt_stored_stats_start_from_zero(temp_db_dir):
    store = await open_store(temp_db_dir)
    try:
        await store.put("stats", {"cursor": "not-a-number"})
        proc = EventProcessor(store, RecordingProducer())
        await proc.load()
        assert proc.cursor == 0
    finally:
        await store.close()
