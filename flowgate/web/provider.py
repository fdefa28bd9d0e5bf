"""Web-fetch capability contract.

Providers implement ``fetch`` and ``search``. Site mapping, crawling and
batch fetching are built on ``fetch`` here, so every provider gets them:

    links = await web.map("https://example.com")
    pages = await web.crawl("https://example.com", limit=5)
    outcomes = await web.batch_fetch(["https://a.example", "https://b.example"])
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import urldefrag, urljoin, urlparse

from flowgate.errors import FetchError

_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\(([^)\s]+)[^)]*\)")


def extract_links(markdown: str, base_url: str, same_host: bool = False) -> list[str]:
    """Absolute http(s) links in a markdown page, deduplicated in order."""
    host = urlparse(base_url).hostname
    links: list[str] = []
    for _, target in _MARKDOWN_LINK.findall(markdown):
        url = urldefrag(urljoin(base_url, target)).url
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            continue
        if same_host and parsed.hostname != host:
            continue
        if url not in links:
            links.append(url)
    return links


@dataclass
class FetchOptions:
    use_browser: bool = False
    wait_for_selector: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class FetchResult:
    """A fetched page as markdown."""

    url: str
    content: str
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SearchHit:
    title: str
    url: str
    snippet: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class WebFetchProvider(ABC):
    """
    Fetches pages and runs web searches.

    Implementations raise FetchError for every failure (HTTP status,
    network, malformed body) so callers never see transport exceptions.
    """

    name: str = "web_fetch"
    batch_concurrency: int = 5

    @abstractmethod
    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        pass

    @abstractmethod
    async def search(self, query: str, limit: int = 5) -> list[SearchHit]:
        pass

    async def map(self, url: str, options: FetchOptions | None = None) -> list[str]:
        """Every link found on a page."""
        page = await self.fetch(url, options)
        return extract_links(page.content, url)

    async def batch_fetch(
        self, urls: list[str], options: FetchOptions | None = None
    ) -> list[FetchResult | FetchError]:
        """
        Fetch several pages concurrently.

        A page that fails is returned as its FetchError in place of the
        result; the batch itself only fails on unexpected errors.
        """
        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def _settle(url: str) -> FetchResult | FetchError:
            async with semaphore:
                try:
                    return await self.fetch(url, options)
                except FetchError as e:
                    return e

        return list(await asyncio.gather(*(_settle(url) for url in urls)))

    async def crawl(
        self, url: str, limit: int = 5, options: FetchOptions | None = None
    ) -> list[FetchResult | FetchError]:
        """
        Fetch a page and then up to ``limit - 1`` same-host pages it links to.

        Raises:
            FetchError: if the starting page cannot be fetched
        """
        start = await self.fetch(url, options)
        start_url = urldefrag(url).url
        links = [
            link
            for link in extract_links(start.content, url, same_host=True)
            if link != start_url
        ]
        rest = await self.batch_fetch(links[: max(0, limit - 1)], options)
        return [start, *rest]

    async def close(self) -> None:
        """Release network resources."""
