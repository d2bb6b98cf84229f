"""Type definitions shared across the nutsync package."""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict


# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

CANONICAL_SALT = "routstr-chat-sync-v1"
ROOT_PREV_ID = "0" * 64
CLIENT_TAG = "nutsync"
KEY_WAIT_TIMEOUT = 5.0
EOSE_TIMEOUT = 10.0
RECIPIENT_INFO_TTL = 20 * 60
UNACCEPTED_MINT_SURCHARGE = 2


class EventKind:
    """Nostr event kinds used by the sync layer and the wallet."""

    # Conversation sync
    SyncEnvelope = 1080  # encrypted conversation event, authored by a sync key
    Bootstrap = 1081  # self-encrypted bootstrap secret
    ChatInner = 20001  # decrypted conversation event

    # NIP-60 wallet events
    Wallet = 37375
    Token = 7375
    TokenHistory = 7376

    # Standard Nostr events
    Deletion = 5  # NIP-09 event deletion


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class NutsyncError(Exception):
    """Base class for all nutsync errors."""


class WalletError(NutsyncError):
    """Base class for wallet errors."""


class MintError(WalletError):
    """Mint returned an error response."""


class NetworkError(MintError):
    """Mint or recipient could not be reached."""


class InsufficientBalanceError(WalletError):
    """Spendable balance is below the requested amount.

    Carries the biggest single mint balance so callers can tell the user
    where their sats are.
    """

    def __init__(
        self,
        message: str,
        *,
        required: int,
        largest_mint: str | None,
        largest_balance: float,
    ) -> None:
        super().__init__(message)
        self.required = required
        self.largest_mint = largest_mint
        self.largest_balance = largest_balance


class InsufficientFundsError(WalletError):
    """A single mint does not hold enough unspent proofs."""

    def __init__(self, mint_url: str, *, after_cleanup: bool = False) -> None:
        self.mint_url = mint_url
        self.after_cleanup = after_cleanup
        suffix = " after cleaning spent proofs" if after_cleanup else ""
        super().__init__(f"Not enough funds on mint {mint_url}{suffix}")


class RefundError(WalletError):
    """Refund of a pending token failed."""


class RelayError(NutsyncError):
    """Base exception for relay errors."""


class DecryptionError(NutsyncError):
    """Payload could not be decrypted or parsed."""


class NIP44Error(DecryptionError):
    """NIP-44 payload is malformed or fails authentication."""


# ──────────────────────────────────────────────────────────────────────────────
# Nostr protocol types
# ──────────────────────────────────────────────────────────────────────────────


class NostrEvent(TypedDict):
    """Nostr event structure."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    sig: str


class NostrFilter(TypedDict, total=False):
    """Filter for REQ subscriptions."""

    ids: list[str]
    authors: list[str]
    kinds: list[int]
    since: int
    until: int
    limit: int
    # Tags filters use #<tag> format


# ──────────────────────────────────────────────────────────────────────────────
# Sync types
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class BootstrapSecret:
    """Secret material carried by a self-encrypted bootstrap event."""

    secret: str  # nsec bech32
    salt: str | None = None

    def to_json(self) -> str:
        return json.dumps({"nsec": self.secret, "salt": self.salt or ""})

    @classmethod
    def from_json(cls, data: str) -> BootstrapSecret:
        payload = json.loads(data)
        if not isinstance(payload, dict) or not payload.get("nsec"):
            raise ValueError("Bootstrap payload has no secret")
        secret, salt = payload["nsec"], payload.get("salt")
        if not isinstance(secret, str):
            raise ValueError("Bootstrap secret must be a string")
        if salt is not None and not isinstance(salt, str):
            raise ValueError("Bootstrap salt must be a string")
        # Empty salt means the canonical one
        return cls(secret=secret, salt=salt or None)


@dataclass(frozen=True)
class SyncKeypair:
    """Keypair derived from a bootstrap secret."""

    public_key: str  # x-only hex
    private_key: bytes
    salt: str

    @property
    def is_canonical(self) -> bool:
        return self.salt == CANONICAL_SALT


Role = Literal["user", "assistant", "system"]


@dataclass
class InnerEvent:
    """Decrypted conversation event (kind 20001)."""

    conversation_id: str
    role: str
    content: Any
    created_at: int = field(default_factory=lambda: int(time.time()))
    prev_id: str | None = None
    model_id: str | None = None
    sats_spent: float | None = None
    pubkey: str = ""
    id: str = ""

    def to_event_dict(self) -> dict[str, Any]:
        """Build the inner event object that is encrypted into an envelope."""
        tags: list[list[str]] = [
            ["d", self.conversation_id],
            ["role", self.role],
            ["client", CLIENT_TAG],
        ]
        if self.prev_id:
            tags.append(["e", self.prev_id])
        if self.role == "assistant":
            tags.append(["model", self.model_id or "unknown-model"])
        if self.sats_spent is not None:
            tags.append(["sats", str(self.sats_spent)])

        content = (
            self.content
            if isinstance(self.content, str)
            else json.dumps(self.content)
        )
        return {
            "kind": EventKind.ChatInner,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "tags": tags,
            "content": content,
        }

    @classmethod
    def from_event_dict(cls, data: dict[str, Any]) -> InnerEvent:
        """Parse a decrypted inner event.

        Raises:
            ValueError: If the object is not a conversation event
        """
        if not isinstance(data, dict) or data.get("kind") != EventKind.ChatInner:
            raise ValueError("Not a conversation event")

        raw_tags = data.get("tags", [])
        if not isinstance(raw_tags, list):
            raise ValueError("Conversation event tags must be a list")
        tags: dict[str, str] = {}
        for tag in raw_tags:
            if (
                isinstance(tag, list)
                and len(tag) >= 2
                and all(isinstance(v, str) for v in tag[:2])
                and tag[0] not in tags
            ):
                tags[tag[0]] = tag[1]

        conversation_id = tags.get("d")
        if not conversation_id:
            raise ValueError("Conversation event has no d tag")

        created_at = data.get("created_at", 0)
        if (
            isinstance(created_at, bool)
            or not isinstance(created_at, (int, float))
            or not math.isfinite(created_at)
        ):
            raise ValueError(f"Invalid created_at: {created_at!r}")
        pubkey = data.get("pubkey", "")
        event_id = data.get("id", "")
        if not isinstance(pubkey, str) or not isinstance(event_id, str):
            raise ValueError("Conversation event pubkey and id must be strings")

        content: Any = data.get("content", "")
        if isinstance(content, str) and content.startswith("["):
            try:
                content = json.loads(content)
            except json.JSONDecodeError:
                pass

        sats = tags.get("sats")
        try:
            sats_spent = float(sats) if sats else None
        except ValueError as e:
            raise ValueError(f"Invalid sats tag: {sats!r}") from e
        return cls(
            conversation_id=conversation_id,
            role=tags.get("role", "user"),
            content=content,
            created_at=int(created_at),
            prev_id=tags.get("e"),
            model_id=tags.get("model"),
            sats_spent=sats_spent,
            pubkey=pubkey,
            id=event_id,
        )


@dataclass
class Message:
    """Conversation message assembled from an inner event."""

    event_id: str
    role: str
    content: Any
    created_at: int
    prev_id: str | None = None
    model_id: str | None = None
    sats_spent: float | None = None

    @property
    def text(self) -> str:
        """Plain text view of structured content."""
        if isinstance(self.content, str):
            return self.content
        parts = [
            part.get("text", "")
            for part in self.content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        return " ".join(p for p in parts if p)


@dataclass
class Conversation:
    id: str
    title: str
    messages: list[Message] = field(default_factory=list)

    @property
    def updated_at(self) -> int:
        return max((m.created_at for m in self.messages), default=0)


# ──────────────────────────────────────────────────────────────────────────────
# Cashu types
# ──────────────────────────────────────────────────────────────────────────────

CurrencyUnit = Literal["sat", "msat", "usd", "eur"]


class Proof(TypedDict):
    """Cashu proof extended with the mint it belongs to."""

    id: str
    amount: int
    secret: str
    C: str
    mint: str
    unit: CurrencyUnit


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    B_: str  # hex encoded blinded message
    id: str  # keyset ID


class BlindedSignature(TypedDict):
    """Blinded signature response from mint."""

    amount: int
    C_: str  # hex encoded blinded signature
    id: str  # keyset ID


@dataclass
class MintBalance:
    balance: int
    unit: str = "sat"

    @property
    def sats(self) -> float:
        return self.balance / 1000 if self.unit == "msat" else float(self.balance)


# ──────────────────────────────────────────────────────────────────────────────
# Payment types
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class PendingToken:
    """Token handed to a recipient but not yet reconciled."""

    base_url: str
    token: str
    amount: float
    mint_url: str | None = None
    created_at: int = field(default_factory=lambda: int(time.time()))


TransactionType = Literal["spent", "mint", "send", "import", "refund", "receive"]


@dataclass
class TransactionEntry:
    type: TransactionType
    amount: float
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    status: Literal["success", "failed"] = "success"
    balance: float | None = None
    model: str | None = None
    message: str | None = None


@dataclass
class SpendResult:
    """Outcome of a spend; failures carry an error message instead of raising."""

    token: str | None
    status: Literal["success", "failed"]
    balance: float = 0
    error: str | None = None
    cause: WalletError | None = field(default=None, repr=False, compare=False)

    @classmethod
    def failed(cls, error: str | WalletError) -> SpendResult:
        cause = error if isinstance(error, WalletError) else None
        return cls(token=None, status="failed", balance=0, error=str(error), cause=cause)

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class RefundResult:
    success: bool
    message: str | None = None
    request_id: str | None = None
    amount: int = 0
