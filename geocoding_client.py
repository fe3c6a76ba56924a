"""Async client for a Nominatim-compatible address search endpoint."""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import httpx

from geo import Coordinate, coordinate_from_mapping

DEFAULT_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
DEFAULT_USER_AGENT = "schoolbus-stop-progress/0.1"


class GeocodingClient:
    """Minimal geocoder: one address in, one coordinate (or None) out."""

    def __init__(
        self,
        search_url: str = DEFAULT_SEARCH_URL,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        country_codes: Optional[str] = None,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._search_url = search_url
        self._user_agent = user_agent
        self._country_codes = country_codes
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._cache: Dict[str, Optional[Coordinate]] = {}

    @classmethod
    def from_env(cls) -> "GeocodingClient":
        """Build a ``GeocodingClient`` from environment configuration.

        * ``GEOCODER_SEARCH_URL`` - defaults to the public Nominatim search API.
        * ``GEOCODER_USER_AGENT`` - Nominatim's usage policy requires one.
        * ``GEOCODER_COUNTRY_CODES`` - optional comma separated ISO codes.
        * ``GEOCODER_TIMEOUT_S`` - request timeout in seconds.
        """
        search_url = (os.getenv("GEOCODER_SEARCH_URL") or "").strip() or DEFAULT_SEARCH_URL
        user_agent = (os.getenv("GEOCODER_USER_AGENT") or "").strip() or DEFAULT_USER_AGENT
        country_codes = (os.getenv("GEOCODER_COUNTRY_CODES") or "").strip() or None
        try:
            timeout_s = float(os.getenv("GEOCODER_TIMEOUT_S", "10"))
        except ValueError:
            raise RuntimeError("GEOCODER_TIMEOUT_S must be a number")
        return cls(
            search_url=search_url,
            user_agent=user_agent,
            country_codes=country_codes,
            timeout_s=timeout_s,
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            kwargs: Dict[str, Any] = {
                "timeout": self._timeout_s,
                "headers": {"User-Agent": self._user_agent},
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def geocode(self, address: str) -> Optional[Coordinate]:
        """Return the best match for ``address`` or None when nothing matches."""
        key = " ".join(address.split()).lower()
        if not key:
            return None
        if key in self._cache:
            return self._cache[key]

        params = {"q": address, "format": "jsonv2", "limit": "1"}
        if self._country_codes:
            params["countrycodes"] = self._country_codes

        client = await self._ensure_client()
        resp = await client.get(self._search_url, params=params)
        resp.raise_for_status()
        try:
            payload = resp.json()
        except ValueError as exc:
            print(f"[geocode] undecodable response for address={address!r}: {exc}")
            raise httpx.DecodingError("geocoder returned a non-JSON body", request=resp.request) from exc
        coord = self._parse_results(payload)
        if coord is None:
            print(f"[geocode] no match for address={address!r}")
        self._cache[key] = coord
        return coord

    async def __call__(self, address: str) -> Optional[Coordinate]:
        return await self.geocode(address)

    def _parse_results(self, payload: Any) -> Optional[Coordinate]:
        results: List[Any] = payload if isinstance(payload, list) else []
        for entry in results:
            if not isinstance(entry, dict):
                continue
            try:
                coord = coordinate_from_mapping(entry)
            except ValueError:
                continue
            if coord is not None:
                return coord
        return None


__all__ = ["GeocodingClient", "DEFAULT_SEARCH_URL"]
