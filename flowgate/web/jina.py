"""
Jina Reader web-fetch provider.

Free service that converts any URL to markdown (``r.jina.ai``) and runs
web searches (``s.jina.ai``). With ``use_browser`` the page is rendered
in a headless browser first, optionally waiting for a CSS selector. An
API key is optional and only raises the rate limit.
"""

import logging
import re
from urllib.parse import quote

import httpx

from flowgate.errors import FetchError
from flowgate.web.provider import FetchOptions, FetchResult, SearchHit, WebFetchProvider

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 30.0
_HEADING = re.compile(r"^#\s+(.+)$", re.MULTILINE)


def markdown_title(markdown: str, fallback: str = "") -> str:
    """First top-level markdown heading, or ``fallback``."""
    match = _HEADING.search(markdown)
    return match.group(1).strip() if match else fallback


class JinaReaderProvider(WebFetchProvider):
    """
    Example:
        async with httpx.AsyncClient() as client:
            web = JinaReaderProvider(client=client)
            page = await web.fetch("https://example.com")
    """

    name = "jina"

    def __init__(
        self,
        reader_url: str = "https://r.jina.ai/",
        search_url: str = "https://s.jina.ai/",
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = _REQUEST_TIMEOUT,
    ):
        self.reader_url = reader_url.rstrip("/") + "/"
        self.search_url = search_url.rstrip("/") + "/"
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        headers.update(extra or {})
        return headers

    async def _get(self, url: str, headers: dict[str, str], target: str) -> httpx.Response:
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.TimeoutException:
            raise FetchError(f"Request timed out fetching {target}", url=target) from None
        except httpx.RequestError as e:
            raise FetchError(f"Network error fetching {target}: {e}", url=target) from None
        if response.status_code >= 400:
            raise FetchError(
                f"Jina returned {response.status_code} for {target}",
                url=target,
                status_code=response.status_code,
            )
        return response

    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        options = options or FetchOptions()
        if not url.strip():
            raise FetchError("Cannot fetch an empty URL")
        extra = {"X-Return-Format": "markdown"}
        if options.use_browser:
            # Headless-browser rendering on Jina's side
            extra["X-Engine"] = "browser"
        if options.wait_for_selector:
            extra["X-Wait-For-Selector"] = options.wait_for_selector

        headers = self._headers({**extra, **options.headers})
        logger.debug(f"Fetching {url} (browser={options.use_browser})")
        response = await self._get(self.reader_url + quote(url, safe=""), headers, url)
        markdown = response.text
        return FetchResult(url=url, content=markdown, title=markdown_title(markdown, url))

    async def search(self, query: str, limit: int = 5) -> list[SearchHit]:
        if not query.strip():
            raise FetchError("Cannot search for an empty query")
        response = await self._get(self.search_url + quote(query, safe=""), self._headers(), query)
        try:
            data = response.json()
        except ValueError:
            raise FetchError(f"Jina search returned a non-JSON body for '{query}'") from None

        items = data.get("data") if isinstance(data, dict) else None
        return [
            SearchHit(
                title=item.get("title") or "Untitled",
                url=item.get("url") or "",
                snippet=item.get("content") or item.get("description") or "",
            )
            for item in (items or [])[:limit]
            if isinstance(item, dict)
        ]

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
