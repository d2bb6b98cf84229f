"""Nostr relay websocket client and multi-relay subscription pool."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Union
from uuid import uuid4

import websockets
import websockets.exceptions

from .crypto import verify_event
from .event_store import EventStore
from .types import EOSE_TIMEOUT, NostrEvent, NostrFilter, RelayError

logger = logging.getLogger(__name__)

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.primal.net",
]

RELAY_ERRORS = (
    RelayError,
    OSError,
    TimeoutError,
    websockets.exceptions.WebSocketException,
    json.JSONDecodeError,
)


class _EndOfStoredEvents:
    """Marker yielded once stored events have been delivered."""

    def __repr__(self) -> str:
        return "EOSE"


EOSE = _EndOfStoredEvents()

StreamItem = Union[NostrEvent, _EndOfStoredEvents]


# ──────────────────────────────────────────────────────────────────────────────
# Relay client
# ──────────────────────────────────────────────────────────────────────────────


class NostrRelay:
    """Minimal Nostr relay client."""

    def __init__(self, url: str) -> None:
        """Initialize relay client.

        Args:
            url: Relay websocket URL (e.g. "wss://relay.damus.io")
        """
        self.url = url
        self.ws: Any = None

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.ws.close_code is None

    async def connect(self) -> None:
        """Connect to the relay."""
        if self.connected:
            return
        try:
            async with asyncio.timeout(5.0):
                self.ws = await websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10, close_timeout=10
                )
        except TimeoutError as e:
            raise RelayError(f"Connection timeout: {self.url}") from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise RelayError(f"Connection failed: {self.url}: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        if self.connected:
            await self.ws.close()

    async def _send(self, message: list[Any]) -> None:
        if not self.connected:
            raise RelayError("Not connected to relay")
        await self.ws.send(json.dumps(message))

    async def _recv(self) -> list[Any]:
        if not self.connected:
            raise RelayError("Not connected to relay")
        data = await self.ws.recv()
        return json.loads(data)

    # ───────────────────────── Publishing Events ─────────────────────────────────

    async def publish_event(self, event: NostrEvent) -> bool:
        """Publish an event to the relay.

        Returns True if accepted, False if rejected or unreachable.
        """
        try:
            await self.connect()
            await self._send(["EVENT", event])

            async with asyncio.timeout(10.0):
                while True:
                    msg = await self._recv()
                    if msg[0] == "OK" and msg[1] == event["id"]:
                        if not msg[2] and len(msg) > 3:
                            logger.info("%s rejected event: %s", self.url, msg[3])
                        return bool(msg[2])
                    elif msg[0] == "NOTICE":
                        logger.info("%s notice: %s", self.url, msg[1])

        except TimeoutError:
            logger.warning("Timeout waiting for OK response from %s", self.url)
            return False
        except RELAY_ERRORS as e:
            logger.warning("Error publishing to %s: %s", self.url, e)
            return False

    async def stream(
        self, filters: list[NostrFilter], *, sub_id: str | None = None
    ) -> AsyncIterator[StreamItem]:
        """Open a subscription and yield events, then ``EOSE``, then live events.

        The generator ends when the relay closes the subscription or the
        connection.
        """
        await self.connect()
        sub_id = sub_id or uuid4().hex[:16]
        await self._send(["REQ", sub_id, *filters])

        try:
            while True:
                try:
                    msg = await self._recv()
                except websockets.exceptions.ConnectionClosed:
                    return

                if not msg or len(msg) < 2:
                    continue
                if msg[0] == "EVENT" and msg[1] == sub_id and len(msg) > 2:
                    yield msg[2]
                elif msg[0] == "EOSE" and msg[1] == sub_id:
                    yield EOSE
                elif msg[0] == "CLOSED" and msg[1] == sub_id:
                    logger.info("%s closed subscription: %s", self.url, msg[2:])
                    return
                elif msg[0] == "NOTICE":
                    logger.info("%s notice: %s", self.url, msg[1])
        finally:
            if self.connected:
                try:
                    await self._send(["CLOSE", sub_id])
                except RELAY_ERRORS:
                    pass


# ──────────────────────────────────────────────────────────────────────────────
# Pool
# ──────────────────────────────────────────────────────────────────────────────


class Subscription:
    """Fan-in of one REQ across several relays.

    Iterating yields events from every relay and a single ``EOSE`` once all
    relays have either sent EOSE or failed. Relays still silent after
    ``eose_timeout`` seconds are no longer waited for, but keep streaming.
    """

    def __init__(
        self,
        relays: list[NostrRelay],
        filters: list[NostrFilter],
        store: EventStore | None = None,
        eose_timeout: float | None = EOSE_TIMEOUT,
    ) -> None:
        self.id = uuid4().hex[:16]
        self.filters = filters
        self.store = store
        self.eose_timeout = eose_timeout
        self._eose_timer: asyncio.TimerHandle | None = None
        self._relays = relays
        self._queue: asyncio.Queue[StreamItem | None] = asyncio.Queue()
        self._pending = {relay.url for relay in relays}
        self._eose_sent = False
        self._tasks: list[asyncio.Task[None]] = []
        self.closed = False

    def start(self) -> None:
        for relay in self._relays:
            self._tasks.append(asyncio.create_task(self._run(relay)))
        if not self._relays:
            self._relay_done("")
        elif self.eose_timeout is not None:
            self._eose_timer = asyncio.get_running_loop().call_later(
                self.eose_timeout, self._eose_expired
            )

    @property
    def eose_received(self) -> bool:
        return self._eose_sent

    async def _run(self, relay: NostrRelay) -> None:
        try:
            async for item in relay.stream(self.filters, sub_id=self.id):
                if item is EOSE:
                    self._relay_done(relay.url)
                    continue
                event: NostrEvent = item  # type: ignore[assignment]
                if not verify_event(event):
                    logger.debug("Dropping event with bad signature from %s", relay.url)
                    continue
                if self.store is not None:
                    self.store.add(event)
                self._queue.put_nowait(event)
        except RELAY_ERRORS as e:
            logger.warning("Relay %s failed: %s", relay.url, e)
        finally:
            self._relay_done(relay.url)

    def _eose_expired(self) -> None:
        self._eose_timer = None
        for url in sorted(self._pending):
            logger.warning(
                "Relay %s sent no EOSE within %.1fs, not waiting for it", url, self.eose_timeout
            )
            self._relay_done(url)

    def _relay_done(self, url: str) -> None:
        self._pending.discard(url)
        if not self._pending and not self._eose_sent:
            self._eose_sent = True
            if self._eose_timer is not None:
                self._eose_timer.cancel()
                self._eose_timer = None
            self._queue.put_nowait(EOSE)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StreamItem:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def wait_for_eose(self) -> list[NostrEvent]:
        """Consume the subscription up to EOSE and return the events seen."""
        events: list[NostrEvent] = []
        async for item in self:
            if item is EOSE:
                break
            events.append(item)  # type: ignore[arg-type]
        return events

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._eose_timer is not None:
            self._eose_timer.cancel()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        for relay in self._relays:
            await relay.disconnect()
        self._queue.put_nowait(None)


class RelayPool:
    """Relays shared by the sync layer and the wallet."""

    def __init__(
        self,
        urls: list[str],
        *,
        store: EventStore | None = None,
        relay_factory: Callable[[str], NostrRelay] = NostrRelay,
        eose_timeout: float | None = EOSE_TIMEOUT,
    ) -> None:
        self.urls = list(dict.fromkeys(urls))
        self.eose_timeout = eose_timeout
        self.store = store
        self._factory = relay_factory
        self._publishers: dict[str, NostrRelay] = {}
        self._publish_locks: dict[str, asyncio.Lock] = {}
        self.subscriptions: list[Subscription] = []

    def subscribe(
        self, filters: list[NostrFilter], relay_urls: list[str] | None = None
    ) -> Subscription:
        """Open a subscription on every relay. Earlier subscriptions stay open."""
        urls = relay_urls if relay_urls is not None else self.urls
        # Each subscription gets its own sockets so reads never interleave
        sub = Subscription(
            [self._factory(url) for url in urls], filters, self.store, self.eose_timeout
        )
        sub.start()
        self.subscriptions.append(sub)
        return sub

    async def fetch(
        self, filters: list[NostrFilter], *, timeout: float = 5.0
    ) -> list[NostrEvent]:
        """One-shot query: events from all relays up to EOSE or ``timeout``."""
        sub = self.subscribe(filters)
        events: dict[str, NostrEvent] = {}
        try:
            async with asyncio.timeout(timeout):
                async for item in sub:
                    if item is EOSE:
                        break
                    events[item["id"]] = item  # type: ignore[index]
        except TimeoutError:
            logger.debug("Fetch timed out waiting for EOSE")
        finally:
            await sub.close()
            self.subscriptions.remove(sub)
        return list(events.values())

    async def _publish_one(self, url: str, event: NostrEvent) -> bool:
        relay = self._publishers.get(url)
        if relay is None:
            relay = self._publishers[url] = self._factory(url)
        lock = self._publish_locks.setdefault(url, asyncio.Lock())
        async with lock:
            return await relay.publish_event(event)

    async def publish(
        self, event: NostrEvent, relay_urls: list[str] | None = None
    ) -> dict[str, bool]:
        """Publish to every relay concurrently; never raises."""
        urls = relay_urls if relay_urls is not None else self.urls
        results = await asyncio.gather(*(self._publish_one(u, event) for u in urls))
        outcome = dict(zip(urls, results))
        if urls and not any(results):
            logger.warning("Event %s was not accepted by any relay", event["id"][:8])
        return outcome

    async def close(self) -> None:
        for sub in list(self.subscriptions):
            await sub.close()
        self.subscriptions.clear()
        for relay in self._publishers.values():
            await relay.disconnect()
        self._publishers.clear()
