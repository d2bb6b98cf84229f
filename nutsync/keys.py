"""Bootstrap events and sync keypair derivation."""

from __future__ import annotations

import asyncio
import enum
import logging
import time

from coincurve import PrivateKey

from .crypto import decode_nsec, encode_nsec, generate_privkey, get_pubkey, hkdf_extract
from .event_store import EventStore
from .relay import RelayPool
from .signer import Signer
from .types import (
    CANONICAL_SALT,
    KEY_WAIT_TIMEOUT,
    BootstrapSecret,
    DecryptionError,
    EventKind,
    NostrEvent,
    SyncKeypair,
)

logger = logging.getLogger(__name__)


class BootstrapState(enum.Enum):
    WAITING_FOR_RELAYS = "waiting_for_relays"
    SUBSCRIBING = "subscribing"
    EOSE_RECEIVED = "eose_received"
    NO_BOOTSTRAP_FOUND = "no_bootstrap_found"
    BOOTSTRAPPING = "bootstrapping"
    PUBLISHED = "published"
    BOOTSTRAP_FOUND = "bootstrap_found"
    DECRYPTING = "decrypting"
    KEYS_DERIVED = "keys_derived"


def derive_sync_keypair(secret: bytes, salt: str | None = None) -> SyncKeypair:
    """Derive the sync keypair for a bootstrap secret.

    The private key is HKDF-Extract(SHA-256, salt, secret); the canonical
    salt is used when ``salt`` is empty.
    """
    salt = salt or CANONICAL_SALT
    private_key = hkdf_extract(salt.encode("utf-8"), secret)
    return SyncKeypair(
        public_key=get_pubkey(PrivateKey(private_key)),
        private_key=private_key,
        salt=salt,
    )


def keypair_from_bootstrap(payload: BootstrapSecret) -> SyncKeypair:
    return derive_sync_keypair(decode_nsec(payload.secret).secret, payload.salt)


class KeyDerivationService:
    """Finds or creates the user's bootstrap events and derives sync keypairs.

    Derived keypairs accumulate in :attr:`keypairs` keyed by public key and
    are never removed during a session.
    """

    def __init__(
        self,
        signer: Signer,
        pool: RelayPool,
        store: EventStore,
        relay_urls: list[str] | None = None,
    ) -> None:
        self.signer = signer
        self.pool = pool
        self.store = store
        self.relay_urls = relay_urls
        self.state = BootstrapState.WAITING_FOR_RELAYS
        self.keypairs: dict[str, SyncKeypair] = {}
        self.processed: set[str] = set()
        self._key_added = asyncio.Event()

    @property
    def bootstrap_filter(self) -> dict:
        return {"kinds": [EventKind.Bootstrap], "authors": [self.signer.pubkey]}

    @property
    def canonical(self) -> SyncKeypair | None:
        return next((kp for kp in self.keypairs.values() if kp.is_canonical), None)

    def add_keypair(self, keypair: SyncKeypair) -> bool:
        """Record a keypair. Returns True when it was not known yet."""
        if keypair.public_key in self.keypairs:
            return False
        self.keypairs[keypair.public_key] = keypair
        self._key_added.set()
        logger.info("Derived sync key %s", keypair.public_key[:8])
        return True

    async def on_eose(self) -> list[SyncKeypair]:
        """Run once the bootstrap subscription reached EOSE on every relay."""
        self.state = BootstrapState.EOSE_RECEIVED
        existing = self.store.get_by_filters(self.bootstrap_filter)
        if not existing:
            self.state = BootstrapState.NO_BOOTSTRAP_FOUND
            keypair = await self.create_bootstrap()
            return [keypair]
        self.state = BootstrapState.BOOTSTRAP_FOUND
        return await self.process_stored()

    async def create_bootstrap(self) -> SyncKeypair:
        """Generate, publish and store a new bootstrap secret.

        The keypair is derived locally before returning, even when no relay
        accepts the event.
        """
        self.state = BootstrapState.BOOTSTRAPPING
        payload = BootstrapSecret(secret=encode_nsec(generate_privkey()), salt="")
        content = await self.signer.nip44_encrypt(
            self.signer.pubkey, payload.to_json()
        )
        event = await self.signer.sign_event(
            {
                "kind": EventKind.Bootstrap,
                "created_at": int(time.time()),
                "tags": [],
                "content": content,
            }
        )
        self.processed.add(event["id"])
        self.store.add(event)

        keypair = keypair_from_bootstrap(payload)
        self.add_keypair(keypair)

        results = await self.pool.publish(event, self.relay_urls)
        if not any(results.values()):
            logger.warning("Bootstrap event %s was not published", event["id"][:8])
        self.state = BootstrapState.PUBLISHED
        return keypair

    async def decrypt_bootstrap(self, event: NostrEvent) -> BootstrapSecret:
        """Decrypt a bootstrap event.

        Raises:
            DecryptionError: If the content cannot be decrypted or parsed
        """
        try:
            plaintext = await self.signer.nip44_decrypt(
                self.signer.pubkey, event["content"]
            )
            return BootstrapSecret.from_json(plaintext)
        except DecryptionError:
            raise
        except ValueError as e:
            raise DecryptionError(f"Invalid bootstrap payload: {e}") from e

    async def process_stored(self) -> list[SyncKeypair]:
        """Derive keypairs from every stored bootstrap event not seen yet.

        Events are marked processed before decryption; failures are dropped.
        """
        self.state = BootstrapState.DECRYPTING
        derived: list[SyncKeypair] = []
        for event in self.store.get_by_filters(self.bootstrap_filter):
            if event["id"] in self.processed:
                continue
            self.processed.add(event["id"])
            try:
                payload = await self.decrypt_bootstrap(event)
                keypair = keypair_from_bootstrap(payload)
            except (DecryptionError, ValueError) as e:
                logger.warning("Skipping bootstrap event %s: %s", event["id"][:8], e)
                continue
            if self.add_keypair(keypair):
                derived.append(keypair)
        if self.keypairs:
            self.state = BootstrapState.KEYS_DERIVED
        return derived

    async def wait_for_canonical(
        self, timeout: float = KEY_WAIT_TIMEOUT
    ) -> SyncKeypair | None:
        """Wait until a canonical keypair exists, or return None on timeout."""
        try:
            async with asyncio.timeout(timeout):
                while self.canonical is None:
                    self._key_added.clear()
                    await self._key_added.wait()
        except TimeoutError:
            logger.warning("No canonical sync key after %.1fs", timeout)
            return None
        return self.canonical
