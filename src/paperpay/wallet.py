"""
Wallet address resolution.

Open Payments wallet addresses are URLs that serve a small JSON document
naming the wallet's asset and the servers that issue grants and hold
its payments.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from .errors import DownstreamError, ValidationError

logger = logging.getLogger(__name__)


def normalize_wallet_url(url: str) -> str:
    """Turn a ``$host/path`` payment pointer into ``https://host/path``."""
    url = (url or "").strip()
    if not url:
        raise ValidationError("Wallet address is required")
    if url.startswith("$"):
        return "https://" + url[1:]
    if not url.startswith(("https://", "http://")):
        raise ValidationError(f"Wallet address must be a URL or $ pointer: {url}")
    return url


@dataclass(frozen=True)
class WalletAddress:
    id: str
    asset_code: str
    asset_scale: int
    auth_server: str
    resource_server: str
    public_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "WalletAddress":
        try:
            return cls(
                id=data["id"],
                asset_code=data["assetCode"],
                asset_scale=int(data["assetScale"]),
                auth_server=data["authServer"],
                resource_server=data["resourceServer"],
                public_name=data.get("publicName"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DownstreamError("wallet lookup", f"malformed wallet document: {e}") from e

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "assetCode": self.asset_code,
            "assetScale": self.asset_scale,
            "authServer": self.auth_server,
            "resourceServer": self.resource_server,
        }
        if self.public_name is not None:
            d["publicName"] = self.public_name
        return d


class WalletDirectory:
    """Resolves wallet URLs, optionally caching documents for ``cache_ttl`` seconds."""

    def __init__(
        self,
        client: httpx.Client,
        cache_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cache: dict[str, tuple[float, WalletAddress]] = {}
        self._lock = threading.Lock()

    def resolve(self, url: str) -> WalletAddress:
        url = normalize_wallet_url(url)
        if self._cache_ttl:
            with self._lock:
                hit = self._cache.get(url)
                if hit and hit[0] > self._clock():
                    return hit[1]

        wallet = self._fetch(url)

        if self._cache_ttl:
            with self._lock:
                self._cache[url] = (self._clock() + self._cache_ttl, wallet)
        return wallet

    def _fetch(self, url: str) -> WalletAddress:
        try:
            response = self._client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.warning("Wallet lookup failed for %s: %s", url, e)
            raise DownstreamError("wallet lookup", str(e)) from e

        if response.status_code == 404:
            raise ValidationError(f"Unknown wallet address: {url}")
        if response.status_code >= 400:
            raise DownstreamError(
                "wallet lookup",
                "wallet server rejected the request",
                status_code=response.status_code,
                detail=response.text,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise DownstreamError("wallet lookup", "wallet document is not JSON") from e
        return WalletAddress.from_dict(data)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
