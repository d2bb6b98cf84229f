"""Cashu Mint API client wrapper."""

from __future__ import annotations

import logging
from typing import Any, TypedDict, cast

import httpx

from .types import (
    BlindedMessage,
    BlindedSignature,
    CurrencyUnit,
    MintError,
    NetworkError,
    Proof,
)

logger = logging.getLogger(__name__)


class InvalidKeysetError(MintError):
    """Raised when keyset structure is invalid per NUT-01."""


class Mint:
    def __init__(self, url: str, client: httpx.AsyncClient | None = None) -> None:
        # Normalize URL by removing trailing slashes
        self.url = url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self._active_keysets: list[Keyset] = []
        self._keysets_info: list[KeysetInfo] = []

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint.

        Raises:
            NetworkError: If the mint cannot be reached
            MintError: If the mint answers with an error status or a body
                that is not a JSON object
        """
        logger.debug("%s %s%s", method, self.url, path)
        try:
            response = await self.client.request(method, f"{self.url}{path}", json=json)
        except httpx.TransportError as e:
            raise NetworkError(f"Mint {self.url} unreachable: {e}") from e

        if response.status_code >= 400:
            raise MintError(f"Mint returned {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise MintError(f"Mint {self.url} returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MintError(f"Mint {self.url} returned {type(data).__name__}, expected an object")
        return data

    # ───────────────────────── Validation ─────────────────────────────────

    @staticmethod
    def _is_valid_compressed_pubkey(pubkey: str) -> bool:
        """Compressed secp256k1 keys are 33 bytes starting with 02 or 03."""
        if not isinstance(pubkey, str) or len(pubkey) != 66:
            return False
        if not pubkey.startswith(("02", "03")):
            return False
        try:
            bytes.fromhex(pubkey)
        except ValueError:
            return False
        return True

    def _validate_keys_response(self, response: dict[str, Any]) -> KeysResponse:
        """Check a ``/v1/keys`` response against NUT-01.

        Raises:
            InvalidKeysetError: If response doesn't match NUT-01
        """
        keysets = response.get("keysets")
        if not isinstance(keysets, list):
            raise InvalidKeysetError("Response missing 'keysets' list")

        for i, keyset in enumerate(keysets):
            if not all(field in keyset for field in ("id", "unit", "keys")):
                raise InvalidKeysetError(f"Invalid keyset at index {i}")
            if not isinstance(keyset["keys"], dict) or not all(
                self._is_valid_compressed_pubkey(pk) for pk in keyset["keys"].values()
            ):
                raise InvalidKeysetError(f"Invalid keys in keyset {keyset['id']}")

        return cast(KeysResponse, response)

    # ───────────────────────── Info & Keys ─────────────────────────────────

    async def get_active_keysets(self) -> list[Keyset]:
        """Active signing keys per keyset (NUT-01), cached per client."""
        if self._active_keysets:
            return self._active_keysets
        response = await self._request("GET", "/v1/keys")
        keysets = self._validate_keys_response(response)["keysets"]
        self._active_keysets = [Keyset(**keyset) for keyset in keysets]
        return self._active_keysets

    async def get_keysets_info(self) -> list[KeysetInfo]:
        """All keysets with their fee rates (NUT-02)."""
        if self._keysets_info:
            return self._keysets_info
        response = await self._request("GET", "/v1/keysets")
        self._keysets_info = cast(list[KeysetInfo], response["keysets"])
        return self._keysets_info

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self,
        *,
        inputs: list[ProofComplete],
        outputs: list[BlindedMessage],
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures."""
        inputs = [
            cast(ProofComplete, {k: v for k, v in p.items() if k not in ("mint", "unit")})
            for p in inputs
        ]
        body: dict[str, Any] = {"inputs": inputs, "outputs": outputs}
        return cast(
            PostSwapResponse, await self._request("POST", "/v1/swap", json=body)
        )

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending."""
        return cast(
            PostCheckStateResponse,
            await self._request("POST", "/v1/checkstate", json={"Ys": Ys}),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Type definitions
# ──────────────────────────────────────────────────────────────────────────────


class ProofOptional(TypedDict, total=False):
    """Optional fields for Proof (NUT-00)."""

    Y: str
    witness: str
    dleq: dict[str, Any]  # NUT-12


class ProofComplete(Proof, ProofOptional):
    """Complete Proof type with both required and optional fields."""


class Keyset(TypedDict):
    """Individual keyset (NUT-01)."""

    id: str
    unit: CurrencyUnit
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey


class KeysResponse(TypedDict):
    keysets: list[Keyset]


class KeysetInfoRequired(TypedDict):
    id: str
    unit: CurrencyUnit
    active: bool


class KeysetInfoOptional(TypedDict, total=False):
    input_fee_ppk: int  # input fee in parts per thousand


class KeysetInfo(KeysetInfoRequired, KeysetInfoOptional):
    """Keyset information from the ``/v1/keysets`` endpoint."""


class PostSwapResponse(TypedDict):
    signatures: list[BlindedSignature]


class PostCheckStateResponse(TypedDict):
    states: list[dict[str, str]]  # Y, state, witness
