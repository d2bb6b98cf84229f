"""Pending tokens handed to recipients and their refunds."""

from __future__ import annotations

import asyncio
import logging

from .provider import RecipientClient, normalize_base_url
from .storage import LocalState
from .types import (
    NetworkError,
    PendingToken,
    RefundError,
    RefundResult,
    TransactionEntry,
    WalletError,
)
from .wallet import WalletBackend

logger = logging.getLogger(__name__)


class PendingTokenStore:
    """At most one pending token per recipient base URL.

    ``lock(base_url)`` serializes spends and refunds for one recipient.
    """

    def __init__(self, state: LocalState | None = None) -> None:
        self.state = state
        self._tokens: dict[str, PendingToken] = state.load_pending() if state else {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _persist(self) -> None:
        if self.state is not None:
            self.state.save_pending(self._tokens)

    def get(self, base_url: str) -> PendingToken | None:
        return self._tokens.get(normalize_base_url(base_url))

    def set(self, token: PendingToken) -> None:
        token.base_url = normalize_base_url(token.base_url)
        self._tokens[token.base_url] = token
        self._persist()

    def clear(self, base_url: str) -> PendingToken | None:
        removed = self._tokens.pop(normalize_base_url(base_url), None)
        if removed is not None:
            self._persist()
        return removed

    def all(self) -> list[PendingToken]:
        return list(self._tokens.values())

    def total(self) -> float:
        return sum(t.amount for t in self._tokens.values())

    def lock(self, base_url: str) -> asyncio.Lock:
        return self._locks.setdefault(normalize_base_url(base_url), asyncio.Lock())


class RefundReconciler:
    """Returns unspent value held by a recipient back into the wallet.

    Works the same for both wallet variants: the recipient's refund token is
    received through :meth:`WalletBackend.receive`.
    """

    def __init__(
        self,
        wallet: WalletBackend,
        pending: PendingTokenStore,
        recipient: RecipientClient,
        state: LocalState | None = None,
    ) -> None:
        self.wallet = wallet
        self.pending = pending
        self.recipient = recipient
        self.state = state

    async def refund(
        self, base_url: str, token: str | None = None, *, mint_url: str | None = None
    ) -> RefundResult:
        """Refund the pending token for ``base_url``.

        Never raises; a failed refund keeps the pending entry so a caller can
        refuse to drop anything that depends on it.
        """
        base_url = normalize_base_url(base_url)
        stored = self.pending.get(base_url)
        token = token or (stored.token if stored else None)
        if not token:
            return RefundResult(success=False, message=f"No pending token for {base_url}")

        try:
            response = await self.recipient.request_refund(base_url, token)
        except NetworkError as e:
            # The recipient never saw the token if it cannot be reached
            logger.warning("Recipient %s unreachable, reclaiming token: %s", base_url, e)
            response = {"token": token}
        except RefundError as e:
            logger.error("Refund from %s failed: %s", base_url, e)
            return RefundResult(success=False, message=str(e))

        amount = 0
        refunded = response.get("token")
        if refunded:
            try:
                amount = await self.wallet.receive(refunded)
            except WalletError as e:
                logger.error("Could not receive refund from %s: %s", base_url, e)
                return RefundResult(
                    success=False, message=f"Could not receive refunded token: {e}"
                )

        self.pending.clear(base_url)
        if self.state is not None:
            self.state.append_history(
                TransactionEntry(
                    type="refund",
                    amount=amount,
                    message=f"Refund from {base_url}"
                    + (f" via {mint_url}" if mint_url else ""),
                )
            )
        logger.info("Refunded %d sats from %s", amount, base_url)
        return RefundResult(
            success=True,
            message=f"Refunded {amount} sats",
            request_id=response.get("request_id"),
            amount=amount,
        )

    async def refund_all(self, held: str | None = None) -> dict[str, RefundResult]:
        """Best-effort refund of every pending token.

        Args:
            held: Base URL whose lock the caller already holds. Tokens of
                other recipients with a spend in flight are skipped.
        """
        held = normalize_base_url(held) if held else None
        results: dict[str, RefundResult] = {}
        for pending in self.pending.all():
            if pending.base_url == held:
                results[pending.base_url] = await self.refund(pending.base_url)
                continue
            lock = self.pending.lock(pending.base_url)
            if lock.locked():
                logger.debug("Skipping refund for busy recipient %s", pending.base_url)
                continue
            async with lock:
                results[pending.base_url] = await self.refund(pending.base_url)
        return results
