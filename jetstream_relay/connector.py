import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress
from typing import Any
from urllib.parse import urlencode, urlsplit

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .config import BACKOFF_BASE_MS, BACKOFF_MAX_MS, CURSOR_BUFFER_US, WILDCARD
from .models import ConnectionStatus, Event

log = logging.getLogger("jetstream")

# feed records can exceed the client default frame limit
ws_connect_unbounded = functools.partial(websockets.connect, max_size=None)

EventHandler = Callable[[Event], Awaitable[None]]


class JetstreamConnector:
    def __init__(
        self,
        url: str,
        collections: Iterable[str],
        handler: EventHandler,
        cursor_source: Callable[[], int],
        *,
        ws_connect: Callable[[str], Awaitable[Any]] | None = None,
        rand: Callable[[], float] = random.random,
        backoff_base_ms: float = BACKOFF_BASE_MS,
        backoff_max_ms: float = BACKOFF_MAX_MS,
        cursor_buffer_us: int = CURSOR_BUFFER_US,
    ):
        self.url = url
        self.collections = list(collections)
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.cursor_buffer_us = cursor_buffer_us
        self._handler = handler
        self._cursor_source = cursor_source
        self._ws_connect = ws_connect or ws_connect_unbounded
        self._rand = rand
        self._ws: Any | None = None
        self._listen_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._last_url: str | None = None
        self._stopped = False
        self._connect_lock = asyncio.Lock()

    def build_url(self, cursor: int) -> str:
        params: list[tuple[str, str]] = []
        if self.collections != [WILDCARD]:
            params.extend(("wantedCollections", c) for c in self.collections)
        # resume slightly before the cursor; replays are tolerated downstream
        if cursor > 0:
            params.append(("cursor", str(cursor - self.cursor_buffer_us)))
        if not params:
            return self.url
        sep = "&" if urlsplit(self.url).query else "?"
        return self.url + sep + urlencode(params, safe="*")

    async def start(self) -> None:
        self._stopped = False
        await self.connect()

    async def stop(self) -> None:
        self._stopped = True
        self._cancel_reconnect()
        await self._teardown()
        log.info("Jetstream connector stopped")

    async def connect(self) -> None:
        async with self._connect_lock:
            await self._connect()

    async def _connect(self) -> None:
        if self._stopped:
            return
        if self._ws is not None:
            log.debug("connect skipped: a connection is already live")
            return
        url = self.build_url(self._cursor_source())
        self._last_url = url
        log.info("Connecting to Jetstream: %s", url)
        try:
            ws = await self._ws_connect(url)
        except Exception as e:
            log.warning("Jetstream connect failed: %s", e)
            self.schedule_reconnect()
            return
        if self._stopped:
            await ws.close()
            return
        log.info("Jetstream websocket connected")
        self._cancel_reconnect()
        self._ws = ws
        self._listen_task = asyncio.create_task(self._listen(ws))

    async def _listen(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    event = Event.model_validate_json(raw)
                except ValidationError as e:
                    log.warning("dropping undecodable Jetstream message: %s", e)
                    continue
                try:
                    await self._handler(event)
                except Exception:
                    log.exception("error processing Jetstream event %d", event.time_us)
            log.info("Jetstream websocket closed")
        except ConnectionClosed as e:
            log.info("Jetstream websocket closed: %s", e)
        except Exception as e:
            log.warning("Jetstream websocket error: %s", e)
        self._on_disconnect(ws)

    def _on_disconnect(self, ws: Any) -> None:
        # a socket already replaced or torn down must not trigger a reconnect
        if self._ws is not ws:
            return
        self._ws = None
        self._listen_task = None
        self.schedule_reconnect()

    def reconnect_delay(self) -> float:
        """Seconds until the next attempt: min(base * 2**rand(), max)."""
        delay_ms = min(self.backoff_base_ms * 2 ** self._rand(), self.backoff_max_ms)
        return delay_ms / 1000

    def schedule_reconnect(self) -> None:
        if self._stopped or self._reconnect_task is not None:
            return
        delay = self.reconnect_delay()
        log.info("Scheduling Jetstream reconnect in %.0fms", delay * 1000)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _teardown(self) -> None:
        ws, task = self._ws, self._listen_task
        self._ws = None
        self._listen_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                log.debug("error closing Jetstream websocket: %s", e)

    async def force_reconnect(self) -> None:
        log.info("Forcing Jetstream reconnect")
        self._cancel_reconnect()
        await self._teardown()
        await self.connect()

    def status(self) -> ConnectionStatus:
        state = getattr(self._ws, "state", None)
        return ConnectionStatus(
            connected=state is State.OPEN,
            state=state.name if isinstance(state, State) else None,
            url=self._last_url,
        )
