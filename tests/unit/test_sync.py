"""Unit tests for the conversation sync session."""

import asyncio

import pytest

from nutsync.crypto import decode_nsec, derive_key
from nutsync.event_store import EventStore
from nutsync.relay import RelayPool
from nutsync.storage import LocalState
from nutsync.sync import SyncSession, SyncState
from nutsync.types import EventKind

RELAYS = ["wss://relay.one", "wss://relay.two"]


def new_session(signer, network, store=None, state=None) -> SyncSession:
    store = store if store is not None else EventStore()
    pool = RelayPool(RELAYS, store=store, relay_factory=network.factory)
    return SyncSession(signer, pool, store, state)


class TestSyncSession:
    @pytest.mark.asyncio
    async def test_first_start_creates_bootstrap(self, signer, network):
        session = new_session(signer, network)
        await session.start()
        try:
            assert session.state is SyncState.READY
            assert len(session.keypairs) == 1
            assert network.published_kinds().count(EventKind.Bootstrap) == 2
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_second_device_sees_messages(self, signer, network):
        """A message published by one session is decrypted by another using the same nsec."""
        async with new_session(signer, network) as first:
            root = await first.publish_message("c1", "user", "hello")
            reply = await first.publish_message("c1", "assistant", "hi", prev_id=root, sats_spent=3)
            assert root is not None and reply is not None

        async with new_session(signer, network) as second:
            bootstraps = [e for e in network.events if e["kind"] == EventKind.Bootstrap]
            assert len(bootstraps) == 1
            conversation = second.assembler.get("c1")
            assert conversation is not None
            assert [m.content for m in conversation.messages] == ["hello", "hi"]

    @pytest.mark.asyncio
    async def test_message_stays_local_without_key(self, signer, network):
        session = new_session(signer, network)
        result = await session.publish_message("c1", "user", "offline", timeout=0.05)
        assert result is None
        assert session.assembler.get("c1") is not None
        assert network.published == []

    @pytest.mark.asyncio
    async def test_deletion_reaches_other_devices(self, signer, network):
        async with new_session(signer, network) as first:
            await first.publish_message("c1", "user", "delete me")
            await first.publish_message("c2", "user", "keep me")
            deletion = await first.delete_conversation("c1")
            assert deletion is not None
            assert first.assembler.get("c1") is None

        async with new_session(signer, network) as second:
            assert second.assembler.get("c1") is None
            assert second.assembler.get("c2") is not None

    @pytest.mark.asyncio
    async def test_other_nsec_cannot_read(self, signer, network):
        from nutsync.crypto import generate_privkey
        from nutsync.signer import LocalSigner

        async with new_session(signer, network) as first:
            await first.publish_message("c1", "user", "private")

        async with new_session(LocalSigner(generate_privkey()), network) as stranger:
            assert stranger.conversations == []

    @pytest.mark.asyncio
    async def test_state_restored_offline(self, signer, network, tmp_path):
        """Keys and events cached on disk are usable with every relay down."""
        key = derive_key(decode_nsec(signer.nsec).secret, b"nutsync-local-state")
        state = LocalState(tmp_path, encryption_key=key)
        async with new_session(signer, network, EventStore(tmp_path / "events.json"), state) as first:
            await first.publish_message("c1", "user", "cached")

        network.failing.update(RELAYS)
        session = new_session(signer, network, EventStore(tmp_path / "events.json"), state)
        session.restore()
        assert len(session.keypairs) == 1
        assert session.assembler.get("c1") is not None

    @pytest.mark.asyncio
    async def test_resync_picks_up_new_messages(self, signer, network):
        async with new_session(signer, network) as first, new_session(signer, network) as second:
            await first.publish_message("c9", "user", "late")
            assert second.assembler.get("c9") is None

            assert await second.resync(timeout=1)
            assert second.assembler.get("c9") is not None
            assert second.state is SyncState.READY

    @pytest.mark.asyncio
    async def test_resync_without_key(self, signer, network):
        session = new_session(signer, network)
        assert not await session.resync(timeout=0.05)

    @pytest.mark.asyncio
    async def test_listener_survives_handler_error(self, signer, network):
        """One event that fails to apply does not stop live updates."""
        async with new_session(signer, network) as session:
            handled = []
            original = session._handle

            async def flaky(event):
                handled.append(event["id"])
                if len(handled) == 1:
                    raise RuntimeError("broken event")
                await original(event)

            session._handle = flaky
            for n in range(2):
                session.store.add(
                    await signer.sign_event({"kind": 1, "created_at": n, "tags": [], "content": ""})
                )
            async with asyncio.timeout(1):
                while len(handled) < 2:
                    await asyncio.sleep(0.01)

            assert not session._tasks[0].done()

    @pytest.mark.asyncio
    async def test_writes_go_to_session_relays(self, signer, network):
        store = EventStore()
        pool = RelayPool(RELAYS, store=store, relay_factory=network.factory)
        async with SyncSession(signer, pool, store, relay_urls=["wss://relay.one"]) as session:
            await session.publish_message("c1", "user", "hello")
            assert await session.delete_conversation("c1") is not None

        assert network.published_kinds() == [
            EventKind.Bootstrap,
            EventKind.SyncEnvelope,
            EventKind.Deletion,
        ]
        assert {url for url, _ in network.published} == {"wss://relay.one"}
