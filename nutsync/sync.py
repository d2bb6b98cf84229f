"""Per-session conversation sync: bootstrap, key derivation, live updates."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from uuid import uuid4

from .codec import EncryptedEventCodec
from .conversations import ConversationAssembler
from .deletion import DeletionCoordinator
from .event_store import EventStore
from .keys import BootstrapState, KeyDerivationService
from .relay import EOSE, RelayPool
from .signer import Signer
from .storage import LocalState
from .types import (
    KEY_WAIT_TIMEOUT,
    Conversation,
    EventKind,
    InnerEvent,
    NostrEvent,
    NostrFilter,
    SyncKeypair,
)

logger = logging.getLogger(__name__)


class SyncState(enum.Enum):
    IDLE = "idle"
    SYNCING_BOOTSTRAP = "syncing_bootstrap"
    DERIVING_KEYS = "deriving_keys"
    SYNCING_CONVERSATIONS = "syncing_conversations"
    READY = "ready"


class SyncSession:
    """Keeps the local conversation view in sync with the user's relays.

    ``READY`` only means the initial backlog was processed; subscriptions
    stay open and keep delivering events until :meth:`close`.

    Example:
        session = SyncSession(signer, pool, store)
        await session.start()
        for conversation in session.conversations:
            print(conversation.title)
    """

    def __init__(
        self,
        signer: Signer,
        pool: RelayPool,
        store: EventStore,
        state: LocalState | None = None,
        relay_urls: list[str] | None = None,
    ) -> None:
        self.signer = signer
        self.pool = pool
        self.store = store
        self.local = state
        self.relay_urls = relay_urls
        self.state = SyncState.IDLE

        self.keys = KeyDerivationService(signer, pool, store, relay_urls)
        self.assembler = ConversationAssembler()
        self.codec = EncryptedEventCodec()
        self.deletions = DeletionCoordinator(
            store, self.assembler, pool, self.keys.keypairs, relay_urls
        )

        # Envelope ids that failed to decrypt or were deleted
        self.skipped: set[str] = state.load_processed() if state else set()
        self._queue: asyncio.Queue[NostrEvent] | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def conversations(self) -> list[Conversation]:
        return self.assembler.conversations

    @property
    def keypairs(self) -> dict[str, SyncKeypair]:
        return self.keys.keypairs

    # ───────────────────────── Lifecycle ─────────────────────────────────

    async def start(self) -> None:
        """Run the initial sync and leave live subscriptions open."""
        if self.state is not SyncState.IDLE:
            return
        self.restore()
        self._queue = self.store.listen()
        self._tasks.append(asyncio.create_task(self._listen()))

        self.state = SyncState.SYNCING_BOOTSTRAP
        self.keys.state = BootstrapState.SUBSCRIBING
        await self._subscribe([self.keys.bootstrap_filter]).wait()

        self.state = SyncState.DERIVING_KEYS
        await self.keys.on_eose()
        self._save_keys()
        self._replay_stored()

        if not self.keys.keypairs:
            logger.warning("No sync key could be derived, conversations stay local")
            self.state = SyncState.READY
            return

        self.state = SyncState.SYNCING_CONVERSATIONS
        await self._subscribe([self._conversation_filter()]).wait()
        self._replay_stored()
        self.state = SyncState.READY
        logger.info("Sync ready: %d conversations", len(self.conversations))

    async def resync(self, timeout: float = KEY_WAIT_TIMEOUT) -> bool:
        """Fetch conversation events again without dropping derived keys.

        Returns:
            False when no sync key is available
        """
        if not self.keys.keypairs:
            await self.keys.process_stored()
            if await self.keys.wait_for_canonical(timeout) is None and not self.keys.keypairs:
                return False
            self._save_keys()

        self.state = SyncState.SYNCING_CONVERSATIONS
        await self._subscribe([self._conversation_filter()]).wait()
        self._replay_stored()
        self.state = SyncState.READY
        return True

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._queue is not None:
            self.store.unlisten(self._queue)
            self._queue = None
        await self.pool.close()
        self._persist()

    async def __aenter__(self) -> SyncSession:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ───────────────────────── Subscriptions ─────────────────────────────────

    def _conversation_filter(self, pubkeys: list[str] | None = None) -> NostrFilter:
        return {
            "kinds": [EventKind.SyncEnvelope, EventKind.Deletion],
            "authors": pubkeys or list(self.keys.keypairs),
        }

    def _subscribe(self, filters: list[NostrFilter]) -> asyncio.Event:
        """Open a subscription and drain it in the background.

        Events reach the session through the store listener; the returned
        event is set once the subscription reached EOSE.
        """
        sub = self.pool.subscribe(filters, self.relay_urls)
        eose = asyncio.Event()

        async def drain() -> None:
            async for item in sub:
                if item is EOSE:
                    eose.set()

        self._tasks.append(asyncio.create_task(drain()))
        return eose

    # ───────────────────────── Event handling ─────────────────────────────────

    async def _listen(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except Exception:
                logger.exception("Failed to handle event %s", event.get("id"))

    async def _handle(self, event: NostrEvent) -> None:
        kind = event["kind"]
        if kind == EventKind.SyncEnvelope:
            self._apply_envelope(event)
        elif kind == EventKind.Deletion:
            self._apply_deletion(event)
        elif kind == EventKind.Bootstrap and event["pubkey"] == self.signer.pubkey:
            # Bootstrap events seen before the initial EOSE are handled by start()
            if self.state in (SyncState.IDLE, SyncState.SYNCING_BOOTSTRAP):
                return
            new_keys = await self.keys.process_stored()
            if new_keys:
                self._save_keys()
                self._subscribe([self._conversation_filter([k.public_key for k in new_keys])])
                self._replay_stored()

    def _apply_envelope(self, event: NostrEvent) -> bool:
        if event["id"] in self.skipped or self.assembler.is_processed(event["id"]):
            return False
        keypair = self.codec.keypair_for(event, self.keys.keypairs)
        if keypair is None:
            # Its key may still arrive through a later bootstrap event
            return False
        inner = self.codec.decrypt_inner(event, keypair)
        if inner is None:
            self.skipped.add(event["id"])
            return False
        return self.assembler.apply(inner, event["id"])

    def _apply_deletion(self, event: NostrEvent) -> int:
        if event["pubkey"] not in self.keys.keypairs:
            return 0
        self.skipped.update(
            tag[1] for tag in event["tags"] if len(tag) >= 2 and tag[0] == "e"
        )
        removed = self.deletions.apply_remote_deletion(event)
        if removed:
            logger.info("Remote deletion removed %d messages", removed)
        return removed

    def _replay_stored(self) -> int:
        """Apply stored envelopes and deletions that are not applied yet."""
        if not self.keys.keypairs:
            return 0
        authors = list(self.keys.keypairs)
        applied = sum(
            1
            for event in self.store.get_by_filters(
                {"kinds": [EventKind.SyncEnvelope], "authors": authors}
            )
            if self._apply_envelope(event)
        )
        for event in self.store.get_by_filters(
            {"kinds": [EventKind.Deletion], "authors": authors}
        ):
            self._apply_deletion(event)
        return applied

    # ───────────────────────── Writes ─────────────────────────────────

    async def publish_message(
        self,
        conversation_id: str,
        role: str,
        content: str | list,
        prev_id: str | None = None,
        model_id: str | None = None,
        sats_spent: float | None = None,
        *,
        timeout: float = KEY_WAIT_TIMEOUT,
    ) -> str | None:
        """Encrypt and publish one conversation message.

        Waits up to ``timeout`` seconds for the canonical sync key. Without
        one the message is only added to the local view.

        Returns:
            The envelope id, or None when the message stayed local
        """
        inner = InnerEvent(
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=int(time.time()),
            prev_id=prev_id,
            model_id=model_id,
            sats_spent=sats_spent,
            pubkey=self.signer.pubkey,
        )
        keypair = await self.keys.wait_for_canonical(timeout)
        if keypair is None:
            self.assembler.apply(inner, f"local-{uuid4().hex}")
            return None

        outer = self.codec.encrypt_outer(inner, keypair, inner.created_at)
        self.assembler.apply(inner, outer["id"])
        self.store.add(outer)
        await self.pool.publish(outer, self.relay_urls)
        return outer["id"]

    async def delete_conversation(self, conversation_id: str) -> NostrEvent | None:
        self.skipped.update(self.assembler.event_ids(conversation_id))
        deletion = await self.deletions.delete_conversation(conversation_id)
        if deletion is not None:
            self.store.add(deletion)
        self._persist()
        return deletion

    # ───────────────────────── Local state ─────────────────────────────────

    def restore(self) -> None:
        """Load cached keys and the event snapshot into the local view."""
        if self.local is None:
            return
        for keypair in self.local.load_keypairs():
            self.keys.add_keypair(keypair)
        loaded = self.store.load()
        if loaded:
            logger.debug("Restored %d events from snapshot", loaded)
        self._replay_stored()

    def _save_keys(self) -> None:
        if self.local is not None:
            self.local.save_keypairs(list(self.keys.keypairs.values()))

    def _persist(self) -> None:
        if self.local is not None:
            self.local.save_processed(self.skipped)
        self.store.save()
