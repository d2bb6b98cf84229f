"""nutsync - encrypted Nostr conversation sync with multi-mint Cashu payments.

Conversations are end-to-end encrypted under keys derived from a
self-encrypted bootstrap secret; payments pick a mint the recipient accepts.
"""

from .payment import PaymentSelector
from .pending import PendingTokenStore, RefundReconciler
from .relay import RelayPool
from .signer import LocalSigner
from .sync import SyncSession, SyncState
from .wallet import LegacyWallet, Nip60Wallet

__all__ = [
    # Conversation sync
    "SyncSession",
    "SyncState",
    "RelayPool",
    "LocalSigner",
    # Payments
    "PaymentSelector",
    "PendingTokenStore",
    "RefundReconciler",
    # Wallets
    "Nip60Wallet",
    "LegacyWallet",
]
