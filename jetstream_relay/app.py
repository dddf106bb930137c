import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from typing import Any

import httpx
from fastapi import FastAPI, Query

from .config import Settings, load_settings
from .connector import JetstreamConnector
from .consumer import consumer_loop
from .delivery_queue import DeliveryQueue
from .processor import EventProcessor
from .producer import QueueProducer
from .state import app_state
from .state_store import StateStore
from .webhook import WebhookClient

logging.basicConfig(
    level=logging.getLevelName("INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
log = logging.getLogger("relay")

ENDPOINTS = {
    "/stats": "Get processing statistics",
    "/status": "Get WebSocket connection status",
    "/queue": "Get delivery queue depth",
    "/dead-letters": "List dead-lettered deliveries",
    "/health": "Health check endpoint",
    "POST /reset": "Reset statistics",
    "POST /reconnect": "Force WebSocket reconnection",
    "POST /dead-letters/requeue": "Move dead letters back onto the delivery queue",
}


# wire fresh components into the global state
def _reset_state(
    settings: Settings,
    ws_connect: Callable[[str], Awaitable[Any]] | None,
    webhook_transport: httpx.AsyncBaseTransport | None,
) -> None:
    app_state.settings = settings
    app_state.store = StateStore(db_path=settings.state_db_path)
    app_state.queue = DeliveryQueue(
        db_path=settings.queue_db_path,
        name=settings.queue_name,
        dead_letter_name=settings.dead_letter_queue,
        max_attempts=settings.max_attempts,
        visibility_timeout=settings.visibility_timeout,
        retry_delay=settings.retry_delay,
    )
    app_state.producer = QueueProducer(app_state.queue)
    app_state.processor = EventProcessor(app_state.store, app_state.producer)
    app_state.connector = JetstreamConnector(
        settings.jetstream_url,
        settings.collections,
        app_state.processor.process_event,
        lambda: app_state.processor.cursor,
        ws_connect=ws_connect,
    )
    app_state.webhook = WebhookClient(
        settings.webhook_url,
        bearer_token=settings.webhook_bearer_token,
        timeout=settings.webhook_timeout,
        transport=webhook_transport,
    )
    app_state.consumer_tasks = []


# start delivery workers
def _start_consumers(settings: Settings) -> None:
    app_state.consumer_tasks = [
        asyncio.create_task(consumer_loop(
            app_state.queue,
            app_state.webhook,
            max_batch_size=settings.max_batch_size,
            max_batch_wait=settings.max_batch_wait,
        ))
        for _ in range(settings.consumer_workers)
    ]
    log.info("Delivery workers started (%d).", settings.consumer_workers)


# stop delivery workers
async def _stop_consumers() -> None:
    for t in app_state.consumer_tasks:
        t.cancel()
    for t in app_state.consumer_tasks:
        with suppress(asyncio.CancelledError):
            await t
    app_state.consumer_tasks.clear()


def create_app(
    settings: Settings | None = None,
    *,
    ws_connect: Callable[[str], Awaitable[Any]] | None = None,
    webhook_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    # configuration errors stop here, before anything is opened
    settings = settings or load_settings()
    logging.getLogger().setLevel(settings.log_level)
    if settings.wants_all_collections:
        log.warning("No collection filter configured; subscribing to every collection")

    # lifespan: setup and teardown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _reset_state(settings, ws_connect, webhook_transport)
        await app_state.store.init()
        await app_state.queue.init()
        await app_state.processor.load()
        _start_consumers(settings)
        await app_state.connector.start()
        try:
            yield
        finally:
            await app_state.connector.stop()
            await _stop_consumers()
            await app_state.processor.flush()
            await app_state.webhook.close()
            await app_state.queue.close()
            await app_state.store.close()
            log.info("Relay stopped and stores closed.")

    app = FastAPI(title="Jetstream Relay", version="0.1.0", lifespan=lifespan)

    @app.get("/")
    async def index():
        return {"message": "Jetstream Relay", "endpoints": ENDPOINTS}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/stats")
    async def stats():
        current = await app_state.processor.get_stats()
        return current.to_json_dict()

    @app.get("/status")
    async def connection_status():
        return app_state.connector.status().model_dump()

    @app.post("/reset")
    async def reset():
        await app_state.processor.reset_stats()
        return {"message": "Stats reset successfully"}

    @app.post("/reconnect")
    async def reconnect():
        await app_state.connector.force_reconnect()
        return {"message": "Reconnection initiated"}

    @app.get("/queue")
    async def queue_depth():
        depth = await app_state.queue.depth()
        return {**depth.model_dump(), "enqueue_failures": app_state.processor.enqueue_failures}

    @app.get("/dead-letters")
    async def dead_letters(limit: int = Query(100, ge=1, le=1000)):
        letters = await app_state.queue.dead_letters(limit=limit)
        return [letter.model_dump(mode="json", by_alias=True) for letter in letters]

    @app.post("/dead-letters/requeue")
    async def requeue_dead_letters():
        count = await app_state.queue.requeue_dead_letters()
        return {"requeued": count}

    return app
