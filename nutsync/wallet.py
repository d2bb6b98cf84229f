"""Cashu wallets: a NIP-60 multi-mint wallet and a local single-mint wallet."""

from __future__ import annotations

import base64
import json
import logging
import time
from pathlib import Path
from typing import Protocol, cast

import cbor2
from coincurve import PublicKey

from .balance import balances_by_mint, from_sats, proofs_balance, to_sats
from .crypto import (
    create_blinded_message_with_secret,
    get_mint_pubkey_for_amount,
    p2pk_secret,
    random_secret,
    proof_y,
    unblind_signature,
)
from .mint import Mint, ProofComplete
from .relay import RelayPool
from .signer import Signer
from .types import (
    BlindedMessage,
    CurrencyUnit,
    EventKind,
    InsufficientFundsError,
    MintBalance,
    MintError,
    NIP44Error,
    Proof,
    WalletError,
)

logger = logging.getLogger(__name__)


def proof_key(proof: Proof) -> str:
    return f"{proof['secret']}:{proof['C']}"


def split_amount(amount: int) -> list[int]:
    """Split into powers of two, largest first."""
    parts = []
    bit = 1 << max(amount.bit_length() - 1, 0)
    while amount > 0 and bit > 0:
        if amount >= bit:
            parts.append(bit)
            amount -= bit
        bit >>= 1
    return parts


# ──────────────────────────────────────────────────────────────────────────────
# Token encoding
# ──────────────────────────────────────────────────────────────────────────────


def serialize_token_v4(proofs: list[Proof], mint_url: str, unit: str) -> str:
    """Serialize proofs into a CashuB (V4) token using CBOR."""
    proofs_by_keyset: dict[str, list[Proof]] = {}
    for proof in proofs:
        proofs_by_keyset.setdefault(proof["id"], []).append(proof)

    tokens = [
        {
            "i": bytes.fromhex(keyset_id),
            "p": [
                {"a": p["amount"], "s": p["secret"], "c": bytes.fromhex(p["C"])}
                for p in keyset_proofs
            ],
        }
        for keyset_id, keyset_proofs in proofs_by_keyset.items()
    ]
    cbor_bytes = cbor2.dumps({"m": mint_url, "u": unit, "t": tokens})
    encoded = base64.urlsafe_b64encode(cbor_bytes).decode().rstrip("=")
    return f"cashuB{encoded}"


def serialize_token_v3(proofs: list[Proof], mint_url: str, unit: str) -> str:
    """Serialize proofs into a CashuA (V3) token."""
    token_data = {
        "token": [
            {
                "mint": mint_url,
                "proofs": [
                    {"id": p["id"], "amount": p["amount"], "secret": p["secret"], "C": p["C"]}
                    for p in proofs
                ],
            }
        ],
        "unit": unit,
    }
    json_str = json.dumps(token_data, separators=(",", ":"))
    encoded = base64.urlsafe_b64encode(json_str.encode()).decode().rstrip("=")
    return f"cashuA{encoded}"


def parse_token(token: str) -> tuple[str, CurrencyUnit, list[Proof]]:
    """Parse a Cashu token and return (mint_url, unit, proofs).

    Raises:
        WalletError: If the token is malformed
    """
    token = token.strip()
    if token.startswith("cashu:"):
        token = token[len("cashu:") :]
    encoded = token[6:]
    encoded += "=" * ((-len(encoded)) % 4)

    try:
        if token.startswith("cashuA"):
            data = json.loads(base64.urlsafe_b64decode(encoded).decode())
            unit = cast(CurrencyUnit, data.get("unit", "sat"))
            entry = data["token"][0]
            mint_url = entry["mint"].rstrip("/")
            proofs = [
                Proof(
                    id=p["id"],
                    amount=p["amount"],
                    secret=p["secret"],
                    C=p["C"],
                    mint=mint_url,
                    unit=unit,
                )
                for p in entry["proofs"]
            ]
        elif token.startswith("cashuB"):
            data = cbor2.loads(base64.urlsafe_b64decode(encoded))
            mint_url = data["m"].rstrip("/")
            unit = cast(CurrencyUnit, data["u"])
            proofs = [
                Proof(
                    id=entry["i"].hex(),
                    amount=p["a"],
                    secret=p["s"],
                    C=p["c"].hex(),
                    mint=mint_url,
                    unit=unit,
                )
                for entry in data["t"]
                for p in entry["p"]
            ]
        else:
            raise WalletError(f"Unknown token version: {token[:7]}")
    except (KeyError, IndexError, TypeError, ValueError, cbor2.CBORDecodeError) as e:
        raise WalletError(f"Invalid token: {e}") from e

    return mint_url, unit, proofs


# ──────────────────────────────────────────────────────────────────────────────
# Wallet contract and shared engine
# ──────────────────────────────────────────────────────────────────────────────


class WalletBackend(Protocol):
    """What payment and refund code needs from a wallet."""

    mint_urls: list[str]

    @property
    def proofs(self) -> list[Proof]: ...

    def balances(self) -> dict[str, MintBalance]: ...

    async def send(
        self, mint_url: str, amount: int, *, p2pk_pubkey: str | None = None
    ) -> str: ...

    async def receive(self, token: str) -> int: ...

    async def clean_spent_proofs(self, mint_url: str) -> list[Proof]: ...


class CashuWallet:
    """Proof handling shared by both wallet variants.

    Subclasses own persistence through :meth:`_load_proofs` and
    :meth:`_replace_proofs`.
    """

    def __init__(self, mint_urls: list[str]) -> None:
        self.mint_urls = [url.rstrip("/") for url in dict.fromkeys(mint_urls)]
        self.mints: dict[str, Mint] = {}
        self._proofs: list[Proof] = []

    @property
    def proofs(self) -> list[Proof]:
        return list(self._proofs)

    def _get_mint(self, mint_url: str) -> Mint:
        mint_url = mint_url.rstrip("/")
        if mint_url not in self.mints:
            self.mints[mint_url] = Mint(mint_url)
        return self.mints[mint_url]

    async def _load_proofs(self) -> list[Proof]:
        raise NotImplementedError

    async def _replace_proofs(
        self, mint_url: str, removed: list[Proof], added: list[Proof]
    ) -> None:
        raise NotImplementedError

    async def load(self) -> None:
        self._proofs = await self._load_proofs()
        for proof in self._proofs:
            if proof["mint"] not in self.mint_urls:
                self.mint_urls.append(proof["mint"])

    async def aclose(self) -> None:
        for mint in self.mints.values():
            await mint.aclose()

    async def __aenter__(self) -> CashuWallet:
        await self.load()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ───────────────────────── Balances ─────────────────────────────────

    def balances(self) -> dict[str, MintBalance]:
        return balances_by_mint(self._proofs, self.mint_urls)

    def balance_sats(self) -> float:
        return sum(b.sats for b in self.balances().values())

    def proofs_at(self, mint_url: str) -> list[Proof]:
        mint_url = mint_url.rstrip("/")
        return [p for p in self._proofs if p["mint"] == mint_url]

    # ───────────────────────── Fees ─────────────────────────────────

    @staticmethod
    def calculate_input_fees(proofs: list[Proof], keyset_fees: dict[str, int]) -> int:
        """Input fee per NUT-02: ceil(sum(input_fee_ppk) / 1000).

        Example:
            With input_fee_ppk=1000 and 3 proofs, fee = (3000 + 999) // 1000 = 3
        """
        sum_fees = sum(int(keyset_fees.get(p["id"], 0) or 0) for p in proofs)
        return (sum_fees + 999) // 1000

    async def _keyset_fees(self, mint: Mint) -> dict[str, int]:
        try:
            keysets = await mint.get_keysets_info()
        except MintError as e:
            logger.debug("No keyset info from %s, assuming no fees: %s", mint.url, e)
            return {}
        return {k["id"]: int(k.get("input_fee_ppk", 0) or 0) for k in keysets}

    # ───────────────────────── Swaps ─────────────────────────────────

    async def _swap(
        self,
        mint_url: str,
        inputs: list[Proof],
        amounts: list[int],
        unit: CurrencyUnit,
        *,
        secrets: list[str] | None = None,
    ) -> list[Proof]:
        """Swap ``inputs`` for new proofs of the given ``amounts`` (NUT-03)."""
        mint = self._get_mint(mint_url)
        keysets = await mint.get_active_keysets()
        keyset = next((k for k in keysets if k["unit"] == unit), None)
        if keyset is None:
            raise WalletError(f"No keyset found for unit {unit} on mint {mint.url}")

        outputs: list[BlindedMessage] = []
        output_secrets: list[str] = []
        blinding_factors: list[str] = []
        for i, amount in enumerate(amounts):
            secret, r_hex, blinded = create_blinded_message_with_secret(
                amount, keyset["id"], secrets[i] if secrets else None
            )
            outputs.append(blinded)
            output_secrets.append(secret)
            blinding_factors.append(r_hex)

        response = await mint.swap(
            inputs=cast(list[ProofComplete], inputs), outputs=outputs
        )

        new_proofs: list[Proof] = []
        for i, sig in enumerate(response["signatures"]):
            mint_pubkey = get_mint_pubkey_for_amount(keyset["keys"], sig["amount"])
            if mint_pubkey is None:
                raise WalletError(f"Mint has no key for amount {sig['amount']}")
            C = unblind_signature(
                PublicKey(bytes.fromhex(sig["C_"])),
                bytes.fromhex(blinding_factors[i]),
                mint_pubkey,
            )
            new_proofs.append(
                Proof(
                    id=sig["id"],
                    amount=sig["amount"],
                    secret=output_secrets[i],
                    C=C.format(compressed=True).hex(),
                    mint=mint.url,
                    unit=unit,
                )
            )
        return new_proofs

    # ───────────────────────── Send / Receive ─────────────────────────────────

    def _select_inputs(self, proofs: list[Proof], amount: int) -> list[Proof]:
        """Largest-first selection covering ``amount``."""
        selected: list[Proof] = []
        total = 0
        for proof in sorted(proofs, key=lambda p: p["amount"], reverse=True):
            if total >= amount:
                break
            selected.append(proof)
            total += proof["amount"]
        return selected

    async def send(
        self, mint_url: str, amount: int, *, p2pk_pubkey: str | None = None
    ) -> str:
        """Create a V4 token worth ``amount`` sats from one mint.

        Args:
            mint_url: Mint to pay from
            amount: Amount in sats (converted to the mint's unit)
            p2pk_pubkey: Lock the sent proofs to this key (NUT-11)

        Raises:
            InsufficientFundsError: If the mint does not hold enough unspent
                proofs, ``after_cleanup`` set once spent proofs were dropped
            NetworkError: If the mint cannot be reached
        """
        mint_url = mint_url.rstrip("/")
        available = self.proofs_at(mint_url)
        unit = cast(CurrencyUnit, available[0]["unit"] if available else "sat")
        target = from_sats(amount, unit)

        if proofs_balance(available) < target:
            raise InsufficientFundsError(mint_url)

        mint = self._get_mint(mint_url)
        fees = await self._keyset_fees(mint)
        inputs = self._select_inputs(available, target)
        input_fee = self.calculate_input_fees(inputs, fees)
        while proofs_balance(inputs) < target + input_fee and len(inputs) < len(available):
            inputs = self._select_inputs(available, target + input_fee)
            input_fee = self.calculate_input_fees(inputs, fees)

        total_in = proofs_balance(inputs)
        if total_in == target and p2pk_pubkey is None:
            await self._replace_proofs(mint_url, inputs, [])
            return serialize_token_v4(inputs, mint_url, unit)

        change = total_in - target - input_fee
        if change < 0:
            raise InsufficientFundsError(mint_url)

        send_amounts = split_amount(target)
        change_amounts = split_amount(change)
        secrets = None
        if p2pk_pubkey is not None:
            secrets = [p2pk_secret(p2pk_pubkey) for _ in send_amounts]
            secrets += [random_secret() for _ in change_amounts]

        try:
            new_proofs = await self._swap(
                mint_url, inputs, send_amounts + change_amounts, unit, secrets=secrets
            )
        except MintError as e:
            if "spent" not in str(e).lower():
                raise
            removed = await self.clean_spent_proofs(mint_url)
            logger.warning("Dropped %d spent proofs from %s", len(removed), mint_url)
            raise InsufficientFundsError(mint_url, after_cleanup=True) from e

        send_proofs = new_proofs[: len(send_amounts)]
        change_proofs = new_proofs[len(send_amounts) :]
        await self._replace_proofs(mint_url, inputs, change_proofs)
        logger.info("Prepared %d %s token from %s", target, unit, mint_url)
        return serialize_token_v4(send_proofs, mint_url, unit)

    async def receive(self, token: str) -> int:
        """Swap a token's proofs into the wallet.

        Returns:
            Amount received in sats, after input fees
        """
        mint_url, unit, proofs = parse_token(token)
        if not proofs:
            return 0
        mint = self._get_mint(mint_url)
        fee = self.calculate_input_fees(proofs, await self._keyset_fees(mint))
        amount = proofs_balance(proofs) - fee
        if amount <= 0:
            raise WalletError("Token value does not cover the mint fee")

        new_proofs = await self._swap(mint_url, proofs, split_amount(amount), unit)
        if mint_url not in self.mint_urls:
            self.mint_urls.append(mint_url)
        await self._replace_proofs(mint_url, [], new_proofs)
        return int(to_sats(amount, unit))

    async def check_spent(self, proofs: list[Proof]) -> list[Proof]:
        """Subset of ``proofs`` the mint reports as spent (NUT-07)."""
        spent: list[Proof] = []
        by_mint: dict[str, list[Proof]] = {}
        for proof in proofs:
            by_mint.setdefault(proof["mint"], []).append(proof)
        for mint_url, mint_proofs in by_mint.items():
            ys = [proof_y(p["secret"]) for p in mint_proofs]
            response = await self._get_mint(mint_url).check_state(Ys=ys)
            states = {s.get("Y"): s.get("state") for s in response["states"]}
            spent.extend(p for p, y in zip(mint_proofs, ys) if states.get(y) == "SPENT")
        return spent

    async def clean_spent_proofs(self, mint_url: str) -> list[Proof]:
        """Drop proofs the mint reports as spent."""
        proofs = self.proofs_at(mint_url)
        if not proofs:
            return []
        spent = await self.check_spent(proofs)
        if spent:
            await self._replace_proofs(mint_url.rstrip("/"), spent, [])
        return spent

    def _apply_local(self, removed: list[Proof], added: list[Proof]) -> None:
        removed_keys = {proof_key(p) for p in removed}
        self._proofs = [p for p in self._proofs if proof_key(p) not in removed_keys]
        self._proofs.extend(added)


# ──────────────────────────────────────────────────────────────────────────────
# Variants
# ──────────────────────────────────────────────────────────────────────────────


class LegacyWallet(CashuWallet):
    """Single proof set for one mint kept in a local JSON file."""

    def __init__(self, mint_url: str, path: Path) -> None:
        super().__init__([mint_url])
        self.path = path

    async def _load_proofs(self) -> list[Proof]:
        if not self.path.exists():
            return []
        try:
            return cast(list[Proof], json.loads(self.path.read_text()))
        except json.JSONDecodeError as e:
            raise WalletError(f"Corrupt proof file {self.path}: {e}") from e

    async def _replace_proofs(
        self, mint_url: str, removed: list[Proof], added: list[Proof]
    ) -> None:
        self._apply_local(removed, added)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._proofs))
        tmp.replace(self.path)


class Nip60Wallet(CashuWallet):
    """Multi-mint wallet whose proofs live in encrypted NIP-60 token events."""

    def __init__(self, signer: Signer, pool: RelayPool, mint_urls: list[str]) -> None:
        super().__init__(mint_urls)
        self.signer = signer
        self.pool = pool
        # token event id -> proofs it holds
        self._token_events: dict[str, list[Proof]] = {}

    async def _load_proofs(self) -> list[Proof]:
        events = await self.pool.fetch(
            [{"kinds": [EventKind.Token], "authors": [self.signer.pubkey]}]
        )
        deleted: set[str] = set()
        contents: dict[str, list[Proof]] = {}
        for event in events:
            try:
                data = json.loads(
                    await self.signer.nip44_decrypt(self.signer.pubkey, event["content"])
                )
                mint_url = data.get("mint", "").rstrip("/")
                contents[event["id"]] = [
                    Proof(
                        id=p["id"],
                        amount=p["amount"],
                        secret=p["secret"],
                        C=p["C"],
                        mint=mint_url,
                        unit=data.get("unit", "sat"),
                    )
                    for p in data.get("proofs", [])
                ]
            except (NIP44Error, ValueError, KeyError, AttributeError) as e:
                logger.warning("Skipping token event %s: %s", event["id"][:8], e)
                continue
            deleted.update(data.get("del", []))

        self._token_events = {
            event_id: proofs
            for event_id, proofs in contents.items()
            if event_id not in deleted
        }
        seen: dict[str, Proof] = {}
        for proofs in self._token_events.values():
            for proof in proofs:
                seen.setdefault(proof_key(proof), proof)
        return list(seen.values())

    async def _publish_token_event(
        self, mint_url: str, proofs: list[Proof], deleted_ids: list[str]
    ) -> str:
        unit = proofs[0]["unit"] if proofs else "sat"
        content = json.dumps(
            {
                "mint": mint_url,
                "unit": unit,
                "proofs": [
                    {"id": p["id"], "amount": p["amount"], "secret": p["secret"], "C": p["C"]}
                    for p in proofs
                ],
                "del": deleted_ids,
            }
        )
        event = await self.signer.sign_event(
            {
                "kind": EventKind.Token,
                "created_at": int(time.time()),
                "tags": [],
                "content": await self.signer.nip44_encrypt(self.signer.pubkey, content),
            }
        )
        await self.pool.publish(event)
        self._token_events[event["id"]] = proofs
        return event["id"]

    async def _replace_proofs(
        self, mint_url: str, removed: list[Proof], added: list[Proof]
    ) -> None:
        """Roll affected token events over into one new event.

        Superseded events are listed in ``del`` and a deletion request is
        published for them.
        """
        removed_keys = {proof_key(p) for p in removed}
        affected = [
            event_id
            for event_id, proofs in self._token_events.items()
            if any(proof_key(p) in removed_keys for p in proofs)
        ]
        remaining = [
            p
            for event_id in affected
            for p in self._token_events[event_id]
            if proof_key(p) not in removed_keys
        ]
        for event_id in affected:
            del self._token_events[event_id]

        self._apply_local(removed, added)
        keep = remaining + added
        if keep:
            await self._publish_token_event(mint_url, keep, affected)
        if affected:
            deletion = await self.signer.sign_event(
                {
                    "kind": EventKind.Deletion,
                    "created_at": int(time.time()),
                    "tags": [["e", event_id] for event_id in affected]
                    + [["k", str(EventKind.Token)]],
                    "content": "",
                }
            )
            await self.pool.publish(deletion)
