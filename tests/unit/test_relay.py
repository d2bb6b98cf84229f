"""Unit tests for multi-relay subscriptions and publishing."""

import asyncio
import json

import pytest
import websockets
from unittest.mock import AsyncMock, patch

from nutsync.crypto import generate_privkey, sign_event
from nutsync.relay import EOSE, NostrRelay, RelayPool
from nutsync.types import RelayError


def make_event(kind=1080, created_at=1000, content="x"):
    return sign_event(
        {"kind": kind, "created_at": created_at, "tags": [], "content": content},
        generate_privkey(),
    )


class TestSubscription:
    @pytest.mark.asyncio
    async def test_single_eose_after_all_relays(self, pool, network, store):
        """Events from both relays arrive before one aggregated EOSE."""
        event = make_event()
        network.events.append(event)

        sub = pool.subscribe([{"kinds": [1080]}])
        items = []
        async with asyncio.timeout(2):
            async for item in sub:
                items.append(item)
                if item is EOSE:
                    break

        assert items.count(EOSE) == 1
        assert items[-1] is EOSE
        # Each relay delivers the event; the store keeps one copy
        assert len([i for i in items if i is not EOSE]) == 2
        assert store.has_event(event["id"])
        await pool.close()

    @pytest.mark.asyncio
    async def test_bad_signature_dropped(self, pool, network, store):
        event = dict(make_event())
        event["content"] = "tampered"
        network.events.append(event)  # type: ignore[arg-type]

        sub = pool.subscribe([{"kinds": [1080]}])
        async with asyncio.timeout(2):
            events = await sub.wait_for_eose()
        assert events == []
        assert len(store) == 0
        await pool.close()

    @pytest.mark.asyncio
    async def test_failed_relay_counts_as_done(self, pool, network):
        network.failing.add("wss://relay.one")
        network.events.append(make_event())

        sub = pool.subscribe([{"kinds": [1080]}])
        async with asyncio.timeout(2):
            events = await sub.wait_for_eose()
        assert len(events) == 1
        assert sub.eose_received
        await pool.close()

    @pytest.mark.asyncio
    async def test_hanging_relay_keeps_eose_pending_until_timeout(self, pool, network):
        network.hanging.add("wss://relay.two")

        sub = pool.subscribe([{"kinds": [1080]}])
        with pytest.raises(TimeoutError):
            async with asyncio.timeout(0.2):
                await sub.wait_for_eose()
        assert not sub.eose_received
        await pool.close()

    @pytest.mark.asyncio
    async def test_silent_relay_stops_blocking_eose(self, network, store):
        """After the EOSE timeout the backlog ends without the silent relay."""
        network.hanging.add("wss://relay.two")
        network.events.append(make_event())
        pool = RelayPool(
            ["wss://relay.one", "wss://relay.two"],
            store=store,
            relay_factory=network.factory,
            eose_timeout=0.1,
        )

        sub = pool.subscribe([{"kinds": [1080]}])
        async with asyncio.timeout(2):
            events = await sub.wait_for_eose()

        assert sub.eose_received
        assert len(events) == 2
        # Both relays stay subscribed for live events
        assert not any(task.done() for task in sub._tasks)
        await pool.close()

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self, pool):
        sub = pool.subscribe([{"kinds": [1080]}])
        async with asyncio.timeout(2):
            await sub.wait_for_eose()
        await sub.close()
        async with asyncio.timeout(2):
            rest = [item async for item in sub]
        assert rest == []


class TestPool:
    @pytest.mark.asyncio
    async def test_fetch_deduplicates(self, pool, network):
        a, b = make_event(), make_event()
        network.events.extend([a, b])
        events = await pool.fetch([{"kinds": [1080]}], timeout=2)
        assert sorted(e["id"] for e in events) == sorted([a["id"], b["id"]])
        assert pool.subscriptions == []

    @pytest.mark.asyncio
    async def test_publish_reports_per_relay(self, pool, network):
        network.failing.add("wss://relay.two")
        event = make_event()
        results = await pool.publish(event)
        assert results == {"wss://relay.one": True, "wss://relay.two": False}
        assert network.published == [("wss://relay.one", event)]

    @pytest.mark.asyncio
    async def test_publish_never_raises_when_all_fail(self, pool, network):
        network.failing.update({"wss://relay.one", "wss://relay.two"})
        results = await pool.publish(make_event())
        assert not any(results.values())


class ScriptedSocket:
    """Websocket double answering with a fixed list of relay messages."""

    def __init__(self, replies):
        self.replies = [json.dumps(r) for r in replies]
        self.sent = []
        self.close_code = None

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def recv(self):
        if not self.replies:
            raise websockets.exceptions.ConnectionClosed(None, None)
        return self.replies.pop(0)

    async def close(self):
        self.close_code = 1000


class TestNostrRelay:
    @pytest.mark.asyncio
    async def test_publish_accepted(self):
        event = make_event()
        socket = ScriptedSocket([["NOTICE", "hello"], ["OK", event["id"], True, ""]])
        with patch("nutsync.relay.websockets.connect", AsyncMock(return_value=socket)):
            assert await NostrRelay("wss://r").publish_event(event)
        assert socket.sent == [["EVENT", event]]

    @pytest.mark.asyncio
    async def test_publish_rejected(self):
        event = make_event()
        socket = ScriptedSocket([["OK", event["id"], False, "blocked: spam"]])
        with patch("nutsync.relay.websockets.connect", AsyncMock(return_value=socket)):
            assert not await NostrRelay("wss://r").publish_event(event)

    @pytest.mark.asyncio
    async def test_publish_unreachable(self):
        with patch("nutsync.relay.websockets.connect", AsyncMock(side_effect=OSError("refused"))):
            assert not await NostrRelay("wss://r").publish_event(make_event())

    @pytest.mark.asyncio
    async def test_stream(self):
        """Events for the subscription, then EOSE, until the relay closes it."""
        event = make_event()
        socket = ScriptedSocket(
            [
                ["EVENT", "other", make_event()],
                ["EVENT", "s1", event],
                ["EOSE", "s1"],
                ["CLOSED", "s1", "done"],
            ]
        )
        relay = NostrRelay("wss://r")
        with patch("nutsync.relay.websockets.connect", AsyncMock(return_value=socket)):
            items = [item async for item in relay.stream([{"kinds": [1080]}], sub_id="s1")]

        assert items == [event, EOSE]
        assert socket.sent[0] == ["REQ", "s1", {"kinds": [1080]}]
        assert socket.sent[-1] == ["CLOSE", "s1"]

    @pytest.mark.asyncio
    async def test_stream_connection_failure(self):
        relay = NostrRelay("wss://r")
        with patch("nutsync.relay.websockets.connect", AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(RelayError):
                async for _ in relay.stream([{"kinds": [1080]}]):
                    pass
