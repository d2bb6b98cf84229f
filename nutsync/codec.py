"""Encryption of conversation events into sync envelopes."""

from __future__ import annotations

import json
import logging
import time
from typing import Mapping

from coincurve import PrivateKey

from .crypto import NIP44Encrypt, sign_event
from .types import DecryptionError, EventKind, InnerEvent, NostrEvent, SyncKeypair

logger = logging.getLogger(__name__)


class EncryptedEventCodec:
    """Wraps inner events (kind 20001) in kind 1080 envelopes.

    The envelope content is NIP-44 v2 encrypted with the sync private key
    used directly as the conversation key, and the envelope is authored and
    signed by the sync key.
    """

    @staticmethod
    def encrypt_outer(
        inner: InnerEvent, keypair: SyncKeypair, created_at: int | None = None
    ) -> NostrEvent:
        plaintext = json.dumps(inner.to_event_dict(), separators=(",", ":"))
        content = NIP44Encrypt.encrypt_with_key(plaintext, keypair.private_key)
        return sign_event(
            {
                "kind": EventKind.SyncEnvelope,
                "created_at": created_at or int(time.time()),
                "tags": [],
                "content": content,
            },
            PrivateKey(keypair.private_key),
        )

    @staticmethod
    def decrypt_raw(outer: NostrEvent, keypair: SyncKeypair) -> InnerEvent:
        """Decrypt an envelope.

        Raises:
            DecryptionError: On a bad MAC, bad JSON or a non-conversation payload
        """
        if not isinstance(outer.get("content"), str):
            raise DecryptionError("Envelope content is not a string")
        plaintext = NIP44Encrypt.decrypt_with_key(outer["content"], keypair.private_key)
        try:
            inner = InnerEvent.from_event_dict(json.loads(plaintext))
        except ValueError as e:
            raise DecryptionError(str(e)) from e
        # The envelope id is the stable identity of the message
        inner.id = outer["id"]
        return inner

    @classmethod
    def decrypt_inner(cls, outer: NostrEvent, keypair: SyncKeypair) -> InnerEvent | None:
        """Like :meth:`decrypt_raw` but returns None instead of raising."""
        try:
            return cls.decrypt_raw(outer, keypair)
        except DecryptionError as e:
            logger.debug("Cannot decrypt envelope %s: %s", outer["id"][:8], e)
            return None

    @staticmethod
    def keypair_for(
        outer: NostrEvent, keypairs: Mapping[str, SyncKeypair]
    ) -> SyncKeypair | None:
        """Keypair whose public key authored the envelope."""
        return keypairs.get(outer["pubkey"])
