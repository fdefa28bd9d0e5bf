"""Web-fetch capability."""

from flowgate.web.jina import JinaReaderProvider
from flowgate.web.provider import FetchOptions, FetchResult, SearchHit, WebFetchProvider

__all__ = ["FetchOptions", "FetchResult", "JinaReaderProvider", "SearchHit", "WebFetchProvider"]
