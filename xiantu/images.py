"""Ending illustration lookup against the Unsplash photo search API.

Several candidates are requested and one is picked at random, so similar
keywords do not keep showing the same top-ranked photo. A keyword with no
results is retried once with a generic fallback query.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from typing import Any

import httpx

logger = logging.getLogger(__name__)

API_ENDPOINT = "https://api.unsplash.com/search/photos"
DEFAULT_FALLBACK_QUERY = "misty mountain landscape"


class ImageLookupFailure(RuntimeError):
    """Raised when no illustration could be found."""


class UnsplashImageSearch:
    def __init__(
        self,
        access_key: str = "",
        *,
        per_page: int = 10,
        fallback_query: str = DEFAULT_FALLBACK_QUERY,
        choose: Callable[[Sequence[Any]], Any] = random.choice,
        endpoint: str = API_ENDPOINT,
        timeout: float = 15.0,
    ) -> None:
        self.access_key = access_key
        self._per_page = per_page
        self._fallback_query = fallback_query
        self._choose = choose
        self._endpoint = endpoint
        self._timeout = timeout

    async def _query(self, keyword: str) -> list[dict]:
        params = {
            "query": keyword,
            "per_page": self._per_page,
            "orientation": "landscape",
        }
        headers = {"Authorization": f"Client-ID {self.access_key}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(self._endpoint, params=params, headers=headers)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ImageLookupFailure("Cannot connect to Unsplash") from e
        except httpx.HTTPStatusError as e:
            raise ImageLookupFailure(
                f"Unsplash returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise ImageLookupFailure(f"Unsplash timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise ImageLookupFailure(f"Unsplash request failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise ImageLookupFailure("Unsplash returned a body that is not JSON") from e
        if not isinstance(data, dict):
            raise ImageLookupFailure("Unexpected response format from Unsplash")
        results = data.get("results") or []
        return [r for r in results if (r.get("urls") or {}).get("regular")]

    async def search(self, keyword: str) -> str:
        """Return a display-ready image URL for keyword."""
        if not self.access_key:
            raise ImageLookupFailure("Unsplash access key is not configured")

        results = await self._query(keyword)
        if not results:
            logger.info("No images for %r; trying %r", keyword, self._fallback_query)
            results = await self._query(self._fallback_query)
        if not results:
            raise ImageLookupFailure(f"No images found for {keyword!r}")

        picked = self._choose(results)
        logger.debug("image for %r: %s (of %d)", keyword, picked.get("id"), len(results))
        return picked["urls"]["regular"]
