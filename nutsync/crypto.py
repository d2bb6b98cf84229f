"""Cryptographic primitives: Nostr keys and signatures, NIP-44 v2, Cashu BDHKE."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import secrets
import struct
from typing import Any, Tuple

from bech32 import bech32_decode, bech32_encode, convertbits
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDF, HKDFExpand

from .types import BlindedMessage, NIP44Error, NostrEvent


# ──────────────────────────────────────────────────────────────────────────────
# Nostr keys
# ──────────────────────────────────────────────────────────────────────────────


def generate_privkey() -> PrivateKey:
    """Generate a fresh secp256k1 private key."""
    return PrivateKey(secrets.token_bytes(32))


def encode_nsec(privkey: PrivateKey | bytes) -> str:
    """Encode a private key as a bech32 ``nsec1...`` string."""
    raw = privkey.secret if isinstance(privkey, PrivateKey) else privkey
    data = convertbits(raw, 8, 5)
    return bech32_encode("nsec", data)


def decode_nsec(nsec: str) -> PrivateKey:
    """Decode an ``nsec1...`` string or a 64 char hex key.

    Raises:
        ValueError: If the key cannot be parsed
    """
    nsec = nsec.strip()
    if nsec.startswith("nsec1"):
        hrp, data = bech32_decode(nsec)
        if hrp != "nsec" or data is None:
            raise ValueError("Invalid nsec format")
        raw = convertbits(data, 5, 8, False)
        if raw is None or len(raw) != 32:
            raise ValueError("Invalid nsec length")
        return PrivateKey(bytes(raw))
    if len(nsec) == 64:
        return PrivateKey(bytes.fromhex(nsec))
    raise ValueError("Private key must be nsec1... or 64 hex characters")


def get_pubkey(privkey: PrivateKey) -> str:
    """Return the x-only public key (hex) used on Nostr."""
    return privkey.public_key.format(compressed=True)[1:].hex()


def _full_pubkey(pubkey_hex: str) -> PublicKey:
    if len(pubkey_hex) == 64:
        pubkey_hex = "02" + pubkey_hex
    return PublicKey(bytes.fromhex(pubkey_hex))


# ──────────────────────────────────────────────────────────────────────────────
# Event signing (NIP-01)
# ──────────────────────────────────────────────────────────────────────────────


def compute_event_id(event: dict[str, Any]) -> str:
    """SHA-256 of the canonical ``[0, pubkey, created_at, kind, tags, content]``."""
    serialized = json.dumps(
        [
            0,
            event["pubkey"],
            event["created_at"],
            event["kind"],
            event["tags"],
            event["content"],
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(event: dict[str, Any], privkey: PrivateKey) -> NostrEvent:
    """Fill in pubkey, id and BIP-340 signature for an unsigned event."""
    signed = dict(event)
    signed["pubkey"] = get_pubkey(privkey)
    signed["id"] = compute_event_id(signed)
    signed["sig"] = privkey.sign_schnorr(bytes.fromhex(signed["id"])).hex()
    return NostrEvent(
        id=signed["id"],
        pubkey=signed["pubkey"],
        created_at=signed["created_at"],
        kind=signed["kind"],
        tags=signed["tags"],
        content=signed["content"],
        sig=signed["sig"],
    )


def verify_event(event: NostrEvent) -> bool:
    """Check the id and signature of an event."""
    try:
        if compute_event_id(event) != event["id"]:
            return False
        pubkey = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return pubkey.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (KeyError, ValueError):
        return False


# ──────────────────────────────────────────────────────────────────────────────
# Cashu BDHKE (NUT-00)
# ──────────────────────────────────────────────────────────────────────────────

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message onto a secp256k1 point.

    Uses the Cashu domain separator and increments a little-endian counter
    until the hash is a valid x coordinate.
    """
    msg_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2**16):
        candidate = hashlib.sha256(msg_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            continue
    raise ValueError("No valid point found")


def blind_message(secret: str, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """Blind a secret for the mint.

    Args:
        secret: The proof secret (its UTF-8 bytes are hashed to the curve)
        r: Optional blinding factor (generated when not provided)

    Returns:
        Tuple of (blinded_point, blinding_factor)
    """
    Y = hash_to_curve(secret.encode("utf-8"))
    if r is None:
        r = secrets.token_bytes(32)
    r_key = PrivateKey(r)
    # B' = Y + r*G
    B_ = PublicKey.combine_keys([Y, r_key.public_key])
    return B_, r


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a mint signature: C = C' - r*K."""
    rK = K.multiply(r)

    # Negate r*K by flipping the y coordinate
    rK_bytes = rK.format(compressed=False)
    x = rK_bytes[1:33]
    y = rK_bytes[33:65]
    p = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
    neg_y = ((p - int.from_bytes(y, "big")) % p).to_bytes(32, "big")
    neg_rK = PublicKey(b"\x04" + x + neg_y)

    return PublicKey.combine_keys([C_, neg_rK])


def random_secret() -> str:
    """Random proof secret as 64 hex characters."""
    return secrets.token_hex(32)


def p2pk_secret(pubkey: str) -> str:
    """NUT-10 well-known secret locking a proof to ``pubkey`` (NUT-11)."""
    if len(pubkey) == 64:
        pubkey = "02" + pubkey
    return json.dumps(
        ["P2PK", {"nonce": secrets.token_hex(32), "data": pubkey}],
        separators=(",", ":"),
    )


def create_blinded_message_with_secret(
    amount: int, keyset_id: str, secret: str | None = None
) -> tuple[str, str, BlindedMessage]:
    """Create a blinded output for ``amount``.

    Returns:
        Tuple of (secret, blinding_factor_hex, blinded_message)
    """
    if secret is None:
        secret = random_secret()
    B_, r = blind_message(secret)
    return (
        secret,
        r.hex(),
        BlindedMessage(
            amount=amount, B_=B_.format(compressed=True).hex(), id=keyset_id
        ),
    )


def get_mint_pubkey_for_amount(keys: dict[str, str], amount: int) -> PublicKey | None:
    """Look up the mint signing key for a denomination."""
    pubkey_hex = keys.get(str(amount))
    if pubkey_hex is None:
        return None
    return PublicKey(bytes.fromhex(pubkey_hex))


def proof_y(secret: str) -> str:
    """Y value of a proof secret, as used by NUT-07 check state."""
    return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()


# ──────────────────────────────────────────────────────────────────────────────
# NIP-44 v2
# ──────────────────────────────────────────────────────────────────────────────


class NIP44Encrypt:
    """NIP-44 v2 encryption implementation."""

    VERSION = 2
    MIN_PLAINTEXT_SIZE = 1
    MAX_PLAINTEXT_SIZE = 65535
    SALT = b"nip44-v2"

    @staticmethod
    def calc_padded_len(unpadded_len: int) -> int:
        """Calculate padded length according to NIP-44."""
        if unpadded_len <= 0:
            raise ValueError("Invalid unpadded length")
        if unpadded_len <= 32:
            return 32

        next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
        chunk = 32 if next_power <= 256 else next_power // 8
        return chunk * ((unpadded_len - 1) // chunk + 1)

    @staticmethod
    def pad(plaintext: bytes) -> bytes:
        """Apply NIP-44 padding to plaintext."""
        unpadded_len = len(plaintext)
        if (
            unpadded_len < NIP44Encrypt.MIN_PLAINTEXT_SIZE
            or unpadded_len > NIP44Encrypt.MAX_PLAINTEXT_SIZE
        ):
            raise ValueError(f"Invalid plaintext length: {unpadded_len}")

        padded_len = NIP44Encrypt.calc_padded_len(unpadded_len)
        prefix = struct.pack(">H", unpadded_len)
        return prefix + plaintext + bytes(padded_len - unpadded_len)

    @staticmethod
    def unpad(padded: bytes) -> bytes:
        """Remove NIP-44 padding from plaintext."""
        if len(padded) < 2:
            raise NIP44Error("Invalid padded data")

        unpadded_len = struct.unpack(">H", padded[:2])[0]
        if unpadded_len == 0 or len(padded) < 2 + unpadded_len:
            raise NIP44Error("Invalid padding")
        if len(padded) != 2 + NIP44Encrypt.calc_padded_len(unpadded_len):
            raise NIP44Error("Invalid padded length")

        return padded[2 : 2 + unpadded_len]

    @staticmethod
    def get_conversation_key(privkey: PrivateKey, pubkey_hex: str) -> bytes:
        """Calculate conversation key using ECDH and HKDF-Extract."""
        shared_point = _full_pubkey(pubkey_hex).multiply(privkey.secret)
        shared_x = shared_point.format(compressed=False)[1:33]
        return hmac.new(NIP44Encrypt.SALT, shared_x, hashlib.sha256).digest()

    @staticmethod
    def get_message_keys(
        conversation_key: bytes, nonce: bytes
    ) -> Tuple[bytes, bytes, bytes]:
        """Derive chacha key, chacha nonce and hmac key from a nonce."""
        if len(conversation_key) != 32:
            raise ValueError("Invalid conversation key length")
        if len(nonce) != 32:
            raise ValueError("Invalid nonce length")

        expanded = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(
            conversation_key
        )
        return expanded[0:32], expanded[32:44], expanded[44:76]

    @staticmethod
    def hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
        if len(aad) != 32:
            raise ValueError("AAD must be 32 bytes")
        return hmac.new(key, aad + message, hashlib.sha256).digest()

    @staticmethod
    def chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
        """ChaCha20 keystream XOR (encryption and decryption are the same)."""
        # cryptography takes a 16 byte nonce: 4 byte counter + 12 byte nonce
        cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
        encryptor = cipher.encryptor()
        return encryptor.update(data) + encryptor.finalize()

    @staticmethod
    def encrypt_with_key(
        plaintext: str, conversation_key: bytes, nonce: bytes | None = None
    ) -> str:
        """Encrypt under an explicit 32 byte conversation key.

        Returns:
            Base64 payload: version(1) + nonce(32) + ciphertext + mac(32)
        """
        if nonce is None:
            nonce = secrets.token_bytes(32)

        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )
        padded = NIP44Encrypt.pad(plaintext.encode("utf-8"))
        ciphertext = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, padded)
        mac = NIP44Encrypt.hmac_aad(hmac_key, ciphertext, nonce)

        payload = bytes([NIP44Encrypt.VERSION]) + nonce + ciphertext + mac
        return base64.b64encode(payload).decode("ascii")

    @staticmethod
    def decrypt_with_key(payload_b64: str, conversation_key: bytes) -> str:
        """Decrypt a payload produced by :meth:`encrypt_with_key`.

        Raises:
            NIP44Error: On malformed payloads or MAC mismatch
        """
        if not payload_b64 or payload_b64.startswith("#"):
            raise NIP44Error("Unsupported encryption version")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except ValueError as e:
            raise NIP44Error(f"Invalid base64: {e}") from e

        if len(payload) < 99 or len(payload) > 65603:
            raise NIP44Error(f"Invalid payload size: {len(payload)}")
        if payload[0] != NIP44Encrypt.VERSION:
            raise NIP44Error(f"Unknown version: {payload[0]}")

        nonce = payload[1:33]
        mac = payload[-32:]
        ciphertext = payload[33:-32]

        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )
        calculated_mac = NIP44Encrypt.hmac_aad(hmac_key, ciphertext, nonce)
        if not hmac.compare_digest(calculated_mac, mac):
            raise NIP44Error("Invalid MAC")

        padded = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, ciphertext)
        try:
            return NIP44Encrypt.unpad(padded).decode("utf-8")
        except UnicodeDecodeError as e:
            raise NIP44Error("Invalid UTF-8 plaintext") from e

    @staticmethod
    def encrypt(
        plaintext: str, sender_privkey: PrivateKey, recipient_pubkey: str
    ) -> str:
        """Encrypt a message to ``recipient_pubkey``."""
        conversation_key = NIP44Encrypt.get_conversation_key(
            sender_privkey, recipient_pubkey
        )
        return NIP44Encrypt.encrypt_with_key(plaintext, conversation_key)

    @staticmethod
    def decrypt(
        ciphertext: str, recipient_privkey: PrivateKey, sender_pubkey: str
    ) -> str:
        """Decrypt a message from ``sender_pubkey``."""
        conversation_key = NIP44Encrypt.get_conversation_key(
            recipient_privkey, sender_pubkey
        )
        return NIP44Encrypt.decrypt_with_key(ciphertext, conversation_key)


def hkdf_extract(salt: bytes, ikm: bytes) -> bytes:
    """HKDF-Extract (RFC 5869) with SHA-256."""
    return hmac.new(salt, ikm, hashlib.sha256).digest()


def derive_key(secret: bytes, info: bytes, length: int = 32) -> bytes:
    """Full HKDF over ``secret``; used for local state encryption keys."""
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info).derive(
        secret
    )
