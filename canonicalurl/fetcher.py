"""
Bounded outbound HTTP calls: a HEAD probe that follows redirects and a GET
that fetches the page body. Both report the effective URL after redirects.
"""

import logging
import time
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class FetchResult:
    def __init__(
        self,
        url: str,
        status_code: int = 0,
        content: bytes = b'',
        headers: Dict[str, str] = None,
        final_url: str = None,
        redirects: int = 0,
        fetch_time: float = 0.0,
        error: str = None,
    ):
        """Initialize a FetchResult with HTTP response data and metadata."""
        self.url = url
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.final_url = final_url or url
        self.redirects = redirects
        self.fetch_time = fetch_time
        self.error = error

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def redirected(self) -> bool:
        """At least one redirect was followed and it ended somewhere else."""
        return self.redirects > 0 and self.final_url != self.url

    @property
    def content_type(self) -> Optional[str]:
        value = self.headers.get('content-type')
        if not value:
            return None
        return value.lower()

    @property
    def content_length(self) -> int:
        """Declared Content-Length, 0 when absent or not a number."""
        try:
            return max(int(self.headers.get('content-length', 0)), 0)
        except (TypeError, ValueError):
            return 0

    @property
    def size(self) -> int:
        return len(self.content)


def describe_error(e: Exception) -> str:
    message = str(e)
    if message:
        return f"{type(e).__name__}: {message}"
    return type(e).__name__


class _BoundedClient:
    """Timeout, redirect limit and User-Agent shared by the probe and the fetcher.

    Every call opens its own AsyncClient so cookies never leak between requests.
    """

    method = 'GET'

    def __init__(
        self,
        user_agent: str,
        timeout: float = 20.0,
        max_redirects: int = 4,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, transport: httpx.AsyncBaseTransport = None, **kwargs):
        return cls(
            user_agent=settings.user_agent,
            timeout=settings.timeout_seconds,
            max_redirects=settings.maxredirects,
            transport=transport,
            **kwargs,
        )

    def _headers(self) -> Dict[str, str]:
        return {'User-Agent': self.user_agent}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            max_redirects=self.max_redirects,
            headers=self._headers(),
            transport=self._transport,
        )

    def _failed(self, url: str, start_time: float, e: Exception) -> FetchResult:
        error = describe_error(e)
        logger.debug(f"{self.method} failed for {url}: {error}")
        return FetchResult(url=url, fetch_time=time.perf_counter() - start_time, error=error)


class RedirectProbe(_BoundedClient):
    method = 'HEAD'

    async def probe(self, url: str) -> FetchResult:
        """HEAD the url, following redirects, and report where it ended."""
        start_time = time.perf_counter()
        try:
            async with self._client() as client:
                response = await client.head(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return self._failed(url, start_time, e)

        return FetchResult(
            url=url,
            status_code=response.status_code,
            headers=dict(response.headers),
            final_url=str(response.url),
            redirects=len(response.history),
            fetch_time=time.perf_counter() - start_time,
        )


class ContentFetcher(_BoundedClient):
    method = 'GET'

    def __init__(self, user_agent: str, max_size: int = 2 * 1024 * 1024, **kwargs):
        super().__init__(user_agent, **kwargs)
        self.max_size = max_size

    @classmethod
    def from_settings(cls, settings, transport: httpx.AsyncBaseTransport = None, **kwargs):
        return super().from_settings(settings, transport=transport, max_size=settings.maxsize, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            'User-Agent': self.user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Encoding': 'gzip, deflate',
        }

    async def fetch(self, url: str) -> FetchResult:
        """GET the url with a fresh cookie jar, reading at most max_size bytes of body."""
        start_time = time.perf_counter()
        try:
            async with self._client() as client:
                async with client.stream('GET', url) as response:
                    content = b''
                    async for chunk in response.aiter_bytes(chunk_size=8192):
                        content += chunk
                        if len(content) > self.max_size:
                            logger.warning(f"Response too large for {url}, truncating at {self.max_size} bytes")
                            content = content[:self.max_size]
                            break
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return self._failed(url, start_time, e)

        return FetchResult(
            url=url,
            status_code=response.status_code,
            content=content,
            headers=dict(response.headers),
            final_url=str(response.url),
            redirects=len(response.history),
            fetch_time=time.perf_counter() - start_time,
        )
