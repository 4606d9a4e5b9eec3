"""
HTTP access to the external NAV sources.
"""
from __future__ import annotations

from typing import Any, Dict

import httpx

from navhub.core.config import settings

from .core import bg_logger, TransientFetchError, RateLimitError

USER_AGENT = "navhub/1.0 (+nav sync)"


class NavSourceClient:
    """
    Fetches the AMFI bulk feed and per-scheme NAV documents.

    Every failure surfaces as TransientFetchError (RateLimitError for HTTP
    429) so callers can retry or record the scheme without caring about the
    transport. Use as an async context manager; an injected httpx client is
    left open for its owner to close.
    """

    def __init__(
        self,
        bulk_feed_url: str | None = None,
        scheme_base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.bulk_feed_url = bulk_feed_url or settings.amfi_nav_url
        self.scheme_base_url = (scheme_base_url or settings.mfapi_base_url).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.http_timeout_seconds,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        )

    async def __aenter__(self) -> NavSourceClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, url: str) -> httpx.Response:
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise TransientFetchError(f"Timeout fetching {url}") from e
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Network error fetching {url}: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limited by {url}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if not response.is_success:
            raise TransientFetchError(f"HTTP {response.status_code} from {url}")
        return response

    async def fetch_bulk_feed(self) -> str:
        """Download the full bulk feed as text."""
        response = await self._get(self.bulk_feed_url)
        bg_logger.debug(f"Fetched bulk feed ({len(response.content)} bytes)")
        return response.text

    async def fetch_scheme_document(self, scheme_code: str) -> Dict[str, Any]:
        """Download the NAV history document for one scheme."""
        url = f"{self.scheme_base_url}/{scheme_code}"
        response = await self._get(url)

        try:
            document = response.json()
        except ValueError as e:
            raise TransientFetchError(f"Invalid JSON for scheme {scheme_code}") from e

        if not isinstance(document, dict) or document.get("status", "SUCCESS") != "SUCCESS":
            raise TransientFetchError(f"Source reported failure for scheme {scheme_code}")
        return document
