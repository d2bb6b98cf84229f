"""Local JSON state kept between runs."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

from .crypto import NIP44Encrypt
from .types import DecryptionError, PendingToken, SyncKeypair, TransactionEntry

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 500


class LocalState:
    """JSON files under one directory.

    The sync keypair cache is NIP-44 encrypted with ``encryption_key`` and
    is not written at all without one.
    """

    def __init__(self, directory: Path, encryption_key: bytes | None = None) -> None:
        self.directory = directory
        self.encryption_key = encryption_key

    def path(self, name: str) -> Path:
        return self.directory / name

    def _read(self, name: str, default: Any) -> Any:
        path = self.path(name)
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", path, e)
            return default

    def _write(self, name: str, data: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path(name)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=1))
        tmp.replace(path)

    # ───────────────────────── Processed events ─────────────────────────────────

    def load_processed(self) -> set[str]:
        return set(self._read("processed.json", []))

    def save_processed(self, event_ids: set[str]) -> None:
        self._write("processed.json", sorted(event_ids))

    # ───────────────────────── Sync keys ─────────────────────────────────

    def load_keypairs(self) -> list[SyncKeypair]:
        if self.encryption_key is None:
            return []
        payload = self._read("keys.json", None)
        if not payload:
            return []
        try:
            entries = json.loads(
                NIP44Encrypt.decrypt_with_key(payload, self.encryption_key)
            )
        except (DecryptionError, ValueError) as e:
            logger.warning("Discarding key cache: %s", e)
            return []
        return [
            SyncKeypair(
                public_key=e["public_key"],
                private_key=bytes.fromhex(e["private_key"]),
                salt=e["salt"],
            )
            for e in entries
        ]

    def save_keypairs(self, keypairs: list[SyncKeypair]) -> None:
        if self.encryption_key is None:
            return
        plaintext = json.dumps(
            [
                {
                    "public_key": kp.public_key,
                    "private_key": kp.private_key.hex(),
                    "salt": kp.salt,
                }
                for kp in keypairs
            ]
        )
        self._write(
            "keys.json", NIP44Encrypt.encrypt_with_key(plaintext, self.encryption_key)
        )

    # ───────────────────────── Pending tokens ─────────────────────────────────

    def load_pending(self) -> dict[str, PendingToken]:
        raw = self._read("pending.json", {})
        return {url: PendingToken(**entry) for url, entry in raw.items()}

    def save_pending(self, pending: dict[str, PendingToken]) -> None:
        self._write("pending.json", {url: asdict(t) for url, t in pending.items()})

    # ───────────────────────── History ─────────────────────────────────

    def load_history(self) -> list[TransactionEntry]:
        return [TransactionEntry(**entry) for entry in self._read("history.json", [])]

    def append_history(self, entry: TransactionEntry) -> None:
        history = self._read("history.json", [])
        history.append(asdict(entry))
        self._write("history.json", history[-HISTORY_LIMIT:])
