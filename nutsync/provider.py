"""HTTP client for payment recipients (providers)."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from .types import RECIPIENT_INFO_TTL, MintError, NetworkError, RefundError

logger = logging.getLogger(__name__)


def normalize_base_url(base_url: str) -> str:
    if not base_url:
        return ""
    return base_url if base_url.endswith("/") else base_url + "/"


class RecipientClient:
    """Talks to a recipient's ``v1`` API.

    The list of mints a recipient accepts is cached per base URL for
    ``ttl`` seconds.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        ttl: float = RECIPIENT_INFO_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self.ttl = ttl
        self._clock = clock
        self._mints_cache: dict[str, tuple[list[str], float]] = {}

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self.client.request(method, url, headers=headers, json=json)
        except httpx.TransportError as e:
            raise NetworkError(f"{url} unreachable: {e}") from e
        if response.status_code >= 400:
            raise MintError(f"{url} returned {response.status_code}: {response.text}")
        try:
            data = response.json()
        except ValueError as e:
            raise MintError(f"{url} returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MintError(f"{url} returned {type(data).__name__}, expected an object")
        return data

    async def accepted_mints(self, base_url: str) -> list[str] | None:
        """Mints the recipient accepts, or None if they could not be fetched."""
        base_url = normalize_base_url(base_url)
        cached = self._mints_cache.get(base_url)
        if cached is not None and self._clock() - cached[1] < self.ttl:
            return cached[0]

        try:
            info = await self._request("GET", f"{base_url}v1/info")
        except MintError as e:
            logger.warning("Could not fetch accepted mints from %s: %s", base_url, e)
            return None

        mints = info.get("mints", [])
        if not isinstance(mints, list):
            logger.warning("Ignoring malformed mint list from %s", base_url)
            return None
        mints = [m.rstrip("/") for m in mints if isinstance(m, str)]
        self._mints_cache[base_url] = (mints, self._clock())
        return mints

    async def wallet_info(self, base_url: str, api_key: str) -> dict[str, Any]:
        """Balance held by the recipient for ``api_key``."""
        return await self._request(
            "GET", f"{normalize_base_url(base_url)}v1/wallet/info", token=api_key
        )

    async def request_refund(self, base_url: str, api_key: str) -> dict[str, Any]:
        """Ask the recipient to return the unspent part of a token.

        Raises:
            NetworkError: If the recipient cannot be reached
            RefundError: If the recipient refuses
        """
        try:
            return await self._request(
                "POST", f"{normalize_base_url(base_url)}v1/wallet/refund", token=api_key
            )
        except NetworkError:
            raise
        except MintError as e:
            raise RefundError(f"Refund from {base_url} failed: {e}") from e
