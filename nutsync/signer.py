"""User signer: event signing and NIP-44 self-encryption."""

from __future__ import annotations

from typing import Any, Protocol

from coincurve import PrivateKey

from .crypto import NIP44Encrypt, decode_nsec, encode_nsec, get_pubkey, sign_event
from .types import NostrEvent


class Signer(Protocol):
    """Anything that can sign and NIP-44 encrypt on behalf of the user."""

    pubkey: str

    async def sign_event(self, template: dict[str, Any]) -> NostrEvent: ...

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str: ...

    async def nip44_decrypt(self, pubkey: str, payload: str) -> str: ...


class LocalSigner:
    """Signer holding the user's private key in memory."""

    def __init__(self, privkey: PrivateKey) -> None:
        self._privkey = privkey
        self.pubkey = get_pubkey(privkey)

    @classmethod
    def from_nsec(cls, nsec: str) -> LocalSigner:
        return cls(decode_nsec(nsec))

    @property
    def nsec(self) -> str:
        return encode_nsec(self._privkey)

    async def sign_event(self, template: dict[str, Any]) -> NostrEvent:
        return sign_event(template, self._privkey)

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str:
        return NIP44Encrypt.encrypt(plaintext, self._privkey, pubkey)

    async def nip44_decrypt(self, pubkey: str, payload: str) -> str:
        return NIP44Encrypt.decrypt(payload, self._privkey, pubkey)
