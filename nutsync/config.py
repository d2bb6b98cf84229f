"""Settings loaded from the environment and a ``.env`` file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, cast

from dotenv import load_dotenv

from .relay import DEFAULT_RELAYS
from .types import EOSE_TIMEOUT

NSEC_ENV_VAR = "NSEC"
RELAYS_ENV_VAR = "NUTSYNC_RELAYS"
MINTS_ENV_VAR = "CASHU_MINTS"
MINT_ENV_VAR = "NUTSYNC_MINT"
STATE_DIR_ENV_VAR = "NUTSYNC_STATE_DIR"
WALLET_MODE_ENV_VAR = "NUTSYNC_WALLET_MODE"
EOSE_TIMEOUT_ENV_VAR = "NUTSYNC_EOSE_TIMEOUT"

WalletMode = Literal["nip60", "legacy"]


def split_urls(value: str | None, *, strip_slash: bool = False) -> list[str]:
    """Comma-separated URLs, deduplicated in order.

    Example: "wss://a.com, wss://b.com,wss://a.com" -> ["wss://a.com", "wss://b.com"]
    """
    if not value:
        return []
    urls = [url.strip() for url in value.split(",")]
    if strip_slash:
        urls = [url.rstrip("/") for url in urls]
    return list(dict.fromkeys(url for url in urls if url))


@dataclass
class Settings:
    nsec: str | None = None
    relays: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    mints: list[str] = field(default_factory=list)
    preferred_mint: str | None = None
    state_dir: Path = field(default_factory=lambda: Path.home() / ".nutsync")
    wallet_mode: WalletMode = "nip60"
    eose_timeout: float = EOSE_TIMEOUT

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> Settings:
        """Read settings, with real environment variables taking priority.

        Raises:
            ValueError: If ``NUTSYNC_WALLET_MODE`` is not nip60 or legacy, or
                ``NUTSYNC_EOSE_TIMEOUT`` is not a positive number
        """
        load_dotenv(env_file or Path.cwd() / ".env", override=False)

        mode = os.getenv(WALLET_MODE_ENV_VAR, "nip60").strip().lower()
        if mode not in ("nip60", "legacy"):
            raise ValueError(f"{WALLET_MODE_ENV_VAR} must be nip60 or legacy, got {mode!r}")

        raw_timeout = os.getenv(EOSE_TIMEOUT_ENV_VAR)
        try:
            eose_timeout = float(raw_timeout) if raw_timeout else EOSE_TIMEOUT
        except ValueError:
            eose_timeout = 0
        if not eose_timeout > 0:
            raise ValueError(
                f"{EOSE_TIMEOUT_ENV_VAR} must be a positive number of seconds, got {raw_timeout!r}"
            )

        mints = split_urls(os.getenv(MINTS_ENV_VAR), strip_slash=True)
        preferred = (os.getenv(MINT_ENV_VAR) or "").strip().rstrip("/") or None
        if preferred and preferred not in mints:
            mints.insert(0, preferred)

        state_dir = os.getenv(STATE_DIR_ENV_VAR)
        return cls(
            nsec=(os.getenv(NSEC_ENV_VAR) or "").strip() or None,
            relays=split_urls(os.getenv(RELAYS_ENV_VAR)) or list(DEFAULT_RELAYS),
            mints=mints,
            preferred_mint=preferred or (mints[0] if mints else None),
            state_dir=Path(state_dir).expanduser() if state_dir else Path.home() / ".nutsync",
            wallet_mode=cast(WalletMode, mode),
            eose_timeout=eose_timeout,
        )
