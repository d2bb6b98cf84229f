"""Conversation deletion through NIP-09 deletion requests."""

from __future__ import annotations

import logging
import time
from typing import Mapping

from coincurve import PrivateKey

from .conversations import ConversationAssembler
from .crypto import sign_event
from .event_store import EventStore
from .relay import RelayPool
from .types import EventKind, NostrEvent, SyncKeypair

logger = logging.getLogger(__name__)


class DeletionCoordinator:
    def __init__(
        self,
        store: EventStore,
        assembler: ConversationAssembler,
        pool: RelayPool,
        keypairs: Mapping[str, SyncKeypair],
        relay_urls: list[str] | None = None,
    ) -> None:
        self.store = store
        self.assembler = assembler
        self.pool = pool
        self.keypairs = keypairs
        self.relay_urls = relay_urls

    def _signing_keypair(self, event_ids: list[str]) -> SyncKeypair | None:
        """Keypair that authored the envelopes, falling back to the canonical one."""
        for event_id in event_ids:
            event = self.store.get_event(event_id)
            if event is not None and event["pubkey"] in self.keypairs:
                return self.keypairs[event["pubkey"]]
        return next((kp for kp in self.keypairs.values() if kp.is_canonical), None)

    def build_deletion(
        self, event_ids: list[str], keypair: SyncKeypair
    ) -> NostrEvent:
        tags = [["e", event_id] for event_id in event_ids]
        tags.append(["k", str(EventKind.SyncEnvelope)])
        return sign_event(
            {
                "kind": EventKind.Deletion,
                "created_at": int(time.time()),
                "tags": tags,
                "content": "",
            },
            PrivateKey(keypair.private_key),
        )

    async def delete_conversation(self, conversation_id: str) -> NostrEvent | None:
        """Delete every event of one conversation locally and ask relays to drop them.

        Publishing is best-effort; local removal happens regardless.

        Returns:
            The deletion event, or None if there was nothing to delete or no
            sync key to sign with
        """
        event_ids = self.assembler.event_ids(conversation_id)
        if not event_ids:
            logger.info("Conversation %s has no events to delete", conversation_id)
            self.assembler.remove_conversation(conversation_id)
            return None

        keypair = self._signing_keypair(event_ids)
        deletion: NostrEvent | None = None
        if keypair is None:
            logger.warning("No sync key available, deleting %s locally only", conversation_id)
        else:
            deletion = self.build_deletion(event_ids, keypair)
            results = await self.pool.publish(deletion, self.relay_urls)
            if not any(results.values()):
                logger.warning(
                    "Deletion of %s was not accepted by any relay", conversation_id
                )

        self.store.remove_many(event_ids)
        self.assembler.remove_conversation(conversation_id)
        logger.info("Deleted conversation %s (%d events)", conversation_id, len(event_ids))
        return deletion

    def apply_remote_deletion(self, event: NostrEvent) -> int:
        """Apply a deletion request published by another device.

        Only deletions authored by a known sync key are honoured, and only for
        envelopes by the same author.
        """
        if event["kind"] != EventKind.Deletion or event["pubkey"] not in self.keypairs:
            return 0
        targets = []
        for tag in event["tags"]:
            if len(tag) < 2 or tag[0] != "e":
                continue
            target = self.store.get_event(tag[1])
            if target is not None and target["pubkey"] != event["pubkey"]:
                continue
            targets.append(tag[1])

        self.store.remove_many(targets)
        return self.assembler.remove_events(targets)
