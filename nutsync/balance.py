"""Per-mint balance aggregation."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from .types import MintBalance, Proof


def proofs_balance(proofs: Iterable[Proof]) -> int:
    return sum(p["amount"] for p in proofs)


def balances_by_mint(
    proofs: list[Proof],
    mints: Mapping[str, list[dict[str, Any]] | None] | Iterable[str],
) -> dict[str, MintBalance]:
    """Sum proofs per mint in the mint's own unit.

    Args:
        proofs: Proofs to aggregate
        mints: Known mints, either mint URL -> keysets or just URLs. Proofs
            are matched to a mint by keyset id when keysets are known and by
            their ``mint`` field otherwise.

    Returns:
        Every known mint, with zero balance and unit "sat" when it holds
        nothing. Units are not normalized.
    """
    if not isinstance(mints, Mapping):
        mints = {url: None for url in mints}

    balances: dict[str, MintBalance] = {}
    for mint_url, keysets in mints.items():
        balance = MintBalance(balance=0, unit="sat")
        if keysets:
            for keyset in keysets:
                matching = [p for p in proofs if p["id"] == keyset["id"]]
                if matching:
                    balance.balance += proofs_balance(matching)
                    balance.unit = keyset.get("unit", "sat")
        else:
            matching = [p for p in proofs if p.get("mint") == mint_url]
            if matching:
                balance.balance = proofs_balance(matching)
                balance.unit = matching[0].get("unit", "sat")
        balances[mint_url] = balance
    return balances


def to_sats(amount: float, unit: str) -> float:
    """Normalize an amount to sats."""
    return amount / 1000 if unit == "msat" else amount


def from_sats(amount: float, unit: str) -> int:
    """Amount in a mint's unit for a sat value."""
    return int(amount * 1000) if unit == "msat" else int(amount)


def total_balance_sats(balances: Mapping[str, MintBalance]) -> float:
    return sum(b.sats for b in balances.values())


def largest_mint_balance(balances: Mapping[str, MintBalance]) -> tuple[str | None, float]:
    """Mint with the largest balance in sats."""
    if not balances:
        return None, 0
    url, best = max(balances.items(), key=lambda item: item[1].sats)
    return url, best.sats
