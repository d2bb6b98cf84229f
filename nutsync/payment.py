"""Mint selection and token creation for paying a recipient."""

from __future__ import annotations

import logging
import math
from typing import Collection, Mapping

from .balance import largest_mint_balance, total_balance_sats
from .pending import PendingTokenStore, RefundReconciler
from .provider import RecipientClient, normalize_base_url
from .storage import LocalState
from .types import (
    UNACCEPTED_MINT_SURCHARGE,
    InsufficientBalanceError,
    InsufficientFundsError,
    MintBalance,
    NetworkError,
    PendingToken,
    SpendResult,
    TransactionEntry,
    WalletError,
)
from .wallet import WalletBackend

logger = logging.getLogger(__name__)


def select_mint_with_balance(
    balances: Mapping[str, MintBalance],
    amount: float,
    excluded: Collection[str] = (),
) -> tuple[str | None, float]:
    """Highest-balance mint holding at least ``amount`` sats.

    Returns:
        (mint_url, balance in sats), or (None, 0) when no mint outside
        ``excluded`` covers the amount
    """
    best: tuple[str | None, float] = (None, 0)
    for url, balance in balances.items():
        if url in excluded or balance.sats < amount:
            continue
        if best[0] is None or balance.sats > best[1]:
            best = (url, balance.sats)
    return best


class PaymentSelector:
    """Creates tokens for recipients, picking a mint they accept.

    Spends to one recipient are serialized through the pending store's
    per-recipient lock. Failures come back as a failed :class:`SpendResult`
    and are never raised.
    """

    def __init__(
        self,
        wallet: WalletBackend,
        pending: PendingTokenStore,
        recipient: RecipientClient,
        reconciler: RefundReconciler,
        state: LocalState | None = None,
    ) -> None:
        self.wallet = wallet
        self.pending = pending
        self.recipient = recipient
        self.reconciler = reconciler
        self.state = state

    async def spend(
        self,
        preferred_mint: str | None,
        amount: float,
        base_url: str = "",
        *,
        reuse_token: bool = False,
        p2pk_pubkey: str | None = None,
        excluded_mints: Collection[str] | None = None,
    ) -> SpendResult:
        """Create a token worth ``amount`` sats for ``base_url``.

        Args:
            preferred_mint: Mint to pay from when it can
            amount: Amount in sats, fractions are rounded up
            base_url: Recipient API base URL, empty for a plain token
            reuse_token: Return the stored pending token if it covers the amount
            p2pk_pubkey: Lock the token to this key
            excluded_mints: Mints not to pay from

        Returns:
            SpendResult with the token and the amount it carries
        """
        try:
            invalid = not amount or math.isnan(amount) or amount <= 0
        except TypeError:
            invalid = True
        if invalid:
            return SpendResult.failed("Please enter a valid amount")
        adjusted = math.ceil(amount)

        base_url = normalize_base_url(base_url)
        if not base_url:
            return await self._spend(
                preferred_mint, adjusted, base_url, reuse_token, p2pk_pubkey, excluded_mints
            )
        async with self.pending.lock(base_url):
            return await self._spend(
                preferred_mint, adjusted, base_url, reuse_token, p2pk_pubkey, excluded_mints
            )

    async def _spend(
        self,
        preferred_mint: str | None,
        amount: int,
        base_url: str,
        reuse_token: bool,
        p2pk_pubkey: str | None,
        excluded_mints: Collection[str] | None,
    ) -> SpendResult:
        preferred = preferred_mint.rstrip("/") if preferred_mint else None
        excluded: list[str] = [m.rstrip("/") for m in excluded_mints or ()]

        stored = self.pending.get(base_url) if base_url else None
        if stored is not None:
            if reuse_token and stored.amount >= amount:
                logger.debug("Reusing pending token for %s", base_url)
                return SpendResult(token=stored.token, status="success", balance=stored.amount)
            result = await self.reconciler.refund(base_url, mint_url=stored.mint_url)
            if not result.success:
                logger.warning("Stale token for %s not refunded: %s", base_url, result.message)

        accepted = await self.recipient.accepted_mints(base_url) if base_url else None

        network_retries = 0
        cleanup_retried: set[str] = set()
        pending_refunded = False

        while True:
            balances = self.wallet.balances()
            pending_total = self.pending.total()
            total = total_balance_sats(balances) + pending_total
            if total < amount:
                biggest_url, biggest = largest_mint_balance(balances)
                return SpendResult.failed(
                    InsufficientBalanceError(
                        f"Insufficient balance to spend. Required: {amount} sats, "
                        f"Available: {total:g} sats. Your biggest mint balance is "
                        f"{biggest:g} sats at {biggest_url}.",
                        required=amount,
                        largest_mint=biggest_url,
                        largest_balance=biggest,
                    )
                )

            target = self._choose_mint(preferred, balances, amount, accepted, base_url, excluded)
            if target is None:
                available = [u for u in balances if u not in excluded]
                biggest_url, biggest = largest_mint_balance(
                    {u: balances[u] for u in available}
                )
                if not pending_refunded and pending_total and biggest + pending_total >= amount:
                    # Value sits in pending tokens; pull it back and try again
                    pending_refunded = True
                    results = await self.reconciler.refund_all(held=base_url or None)
                    failed = [url for url, r in results.items() if not r.success]
                    if failed:
                        logger.warning("Refunds failed for %s", ", ".join(failed))
                    continue
                return SpendResult.failed(
                    InsufficientBalanceError(
                        f"Insufficient balance. Required: {amount} sats, Available: "
                        f"{biggest:g} sats from mint {biggest_url} is your biggest mint balance.",
                        required=amount,
                        largest_mint=biggest_url,
                        largest_balance=biggest,
                    )
                )

            mint_url, ask = target
            try:
                token = await self.wallet.send(mint_url, ask, p2pk_pubkey=p2pk_pubkey)
            except NetworkError as e:
                logger.warning("Mint %s failed during spend: %s", mint_url, e)
                excluded.append(mint_url)
                network_retries += 1
                if network_retries < len(balances):
                    continue
                return SpendResult.failed(f"Error generating token: {e}")
            except InsufficientFundsError as e:
                if e.after_cleanup and mint_url not in cleanup_retried:
                    cleanup_retried.add(mint_url)
                    continue
                return SpendResult.failed(f"Error generating token: {e}")
            except WalletError as e:
                logger.error("Spend from %s failed: %s", mint_url, e)
                return SpendResult.failed(f"Error generating token: {e}")
            break

        if base_url:
            self.pending.set(
                PendingToken(base_url=base_url, token=token, amount=ask, mint_url=mint_url)
            )
        if self.state is not None:
            self.state.append_history(
                TransactionEntry(
                    type="spent",
                    amount=ask,
                    balance=total_balance_sats(self.wallet.balances()),
                    message=f"Paid {base_url or 'token'} from {mint_url}",
                )
            )
        logger.info("Spent %d sats from %s", ask, mint_url)
        return SpendResult(token=token, status="success", balance=ask)

    def _choose_mint(
        self,
        preferred: str | None,
        balances: Mapping[str, MintBalance],
        amount: int,
        accepted: list[str] | None,
        base_url: str,
        excluded: list[str],
    ) -> tuple[str, int] | None:
        """Mint to pay from and the amount to take from it."""

        def accepts(url: str) -> bool:
            return not base_url or (accepted is not None and url in accepted)

        if (
            preferred
            and preferred not in excluded
            and preferred in balances
            and balances[preferred].sats >= amount
            and accepts(preferred)
        ):
            return preferred, amount

        selected, _ = select_mint_with_balance(balances, amount, excluded)
        if selected is None:
            return None
        if accepts(selected):
            return selected, amount

        walked = list(excluded)
        candidate: str | None = selected
        while candidate is not None and not accepts(candidate):
            walked.append(candidate)
            candidate, _ = select_mint_with_balance(balances, amount, walked)
        if candidate is not None:
            return candidate, amount

        # Nothing accepted; the recipient swaps from the original mint
        logger.info("No accepted mint for %s, paying from %s with surcharge", base_url, selected)
        return selected, amount + UNACCEPTED_MINT_SURCHARGE
