"""Unit tests for key encoding, event signing, NIP-44 and Cashu blinding."""

import pytest
from coincurve import PrivateKey

from nutsync.crypto import (
    NIP44Encrypt,
    blind_message,
    decode_nsec,
    encode_nsec,
    generate_privkey,
    get_pubkey,
    hash_to_curve,
    p2pk_secret,
    sign_event,
    unblind_signature,
    verify_event,
)
from nutsync.types import NIP44Error


class TestKeys:
    def test_nsec_round_trip(self):
        """An encoded nsec decodes to the same key."""
        privkey = generate_privkey()
        nsec = encode_nsec(privkey)
        assert nsec.startswith("nsec1")
        assert decode_nsec(nsec).secret == privkey.secret

    def test_decode_hex_key(self):
        """A 64 character hex string is accepted as a private key."""
        privkey = generate_privkey()
        assert decode_nsec(privkey.secret.hex()).secret == privkey.secret

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            decode_nsec("not-a-key")

    def test_pubkey_is_x_only(self):
        assert len(get_pubkey(generate_privkey())) == 64


class TestEventSigning:
    def _event(self, privkey: PrivateKey):
        return sign_event(
            {"kind": 1, "created_at": 1700000000, "tags": [["t", "x"]], "content": "hello"},
            privkey,
        )

    def test_signed_event_verifies(self):
        privkey = generate_privkey()
        event = self._event(privkey)
        assert event["pubkey"] == get_pubkey(privkey)
        assert verify_event(event)

    def test_tampered_content_fails(self):
        event = dict(self._event(generate_privkey()))
        event["content"] = "goodbye"
        assert not verify_event(event)  # type: ignore[arg-type]

    def test_foreign_signature_fails(self):
        event = dict(self._event(generate_privkey()))
        other = self._event(generate_privkey())
        event["sig"] = other["sig"]
        assert not verify_event(event)  # type: ignore[arg-type]


class TestNIP44:
    def test_padded_lengths(self):
        """Padding follows the NIP-44 chunking rule."""
        assert NIP44Encrypt.calc_padded_len(1) == 32
        assert NIP44Encrypt.calc_padded_len(32) == 32
        assert NIP44Encrypt.calc_padded_len(33) == 64
        assert NIP44Encrypt.calc_padded_len(100) == 128
        assert NIP44Encrypt.calc_padded_len(256) == 256
        assert NIP44Encrypt.calc_padded_len(257) == 320
        assert NIP44Encrypt.calc_padded_len(1000) == 1024

    def test_conversation_key_vector(self):
        """Conversation key for secret keys 1 and 2 matches the NIP-44 vector."""
        sec1 = PrivateKey(bytes.fromhex("00" * 31 + "01"))
        sec2 = PrivateKey(bytes.fromhex("00" * 31 + "02"))
        key = NIP44Encrypt.get_conversation_key(sec1, get_pubkey(sec2))
        assert key.hex() == (
            "c41c775356fd92eadc63ff5a0dc1da211b268cbea22316767095b2871ea1412d"
        )

    def test_conversation_key_is_symmetric(self):
        alice, bob = generate_privkey(), generate_privkey()
        assert NIP44Encrypt.get_conversation_key(
            alice, get_pubkey(bob)
        ) == NIP44Encrypt.get_conversation_key(bob, get_pubkey(alice))

    def test_encrypt_between_parties(self):
        alice, bob = generate_privkey(), generate_privkey()
        payload = NIP44Encrypt.encrypt("hi bob ⚡", alice, get_pubkey(bob))
        assert NIP44Encrypt.decrypt(payload, bob, get_pubkey(alice)) == "hi bob ⚡"

    def test_self_encryption(self):
        """Bootstrap payloads are encrypted to the author's own key."""
        me = generate_privkey()
        payload = NIP44Encrypt.encrypt('{"nsec":"x"}', me, get_pubkey(me))
        assert NIP44Encrypt.decrypt(payload, me, get_pubkey(me)) == '{"nsec":"x"}'

    def test_wrong_key_fails_mac(self):
        key = bytes(range(32))
        payload = NIP44Encrypt.encrypt_with_key("secret", key)
        with pytest.raises(NIP44Error):
            NIP44Encrypt.decrypt_with_key(payload, bytes(32))

    def test_rejects_legacy_payload(self):
        with pytest.raises(NIP44Error):
            NIP44Encrypt.decrypt_with_key("#not-supported", bytes(32))

    def test_fixed_nonce_is_deterministic(self):
        key = bytes(range(32))
        nonce = bytes(32)
        assert NIP44Encrypt.encrypt_with_key(
            "abc", key, nonce
        ) == NIP44Encrypt.encrypt_with_key("abc", key, nonce)


class TestCashuBlinding:
    def test_hash_to_curve_vector(self):
        """NUT-00 test vector for a zero message."""
        point = hash_to_curve(bytes(32))
        assert point.format(compressed=True).hex() == (
            "024cce997d3b518f739663b757deaec95bcd9473c30a14ac2fd04023a739d1a725"
        )

    def test_blind_sign_unblind(self):
        """Unblinding k*B' gives k*Y for the secret's Y."""
        mint_key = generate_privkey()
        secret = "test_message"
        B_, r = blind_message(secret)
        C_ = B_.multiply(mint_key.secret)
        C = unblind_signature(C_, r, mint_key.public_key)
        expected = hash_to_curve(secret.encode()).multiply(mint_key.secret)
        assert C.format() == expected.format()

    def test_p2pk_secret_shape(self):
        pubkey = "ab" * 32
        secret = p2pk_secret(pubkey)
        assert secret.startswith('["P2PK",')
        assert '"data":"02' + pubkey in secret
