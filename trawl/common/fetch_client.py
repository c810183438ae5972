"""Fetch clients.

A fetch client performs one HTTP(S) or rendered fetch. The crawl engine
treats it as opaque: it only needs ``fetch(url, proxy, timeout)`` to
return a ``FetchResult`` for any HTTP response and to raise for failures
that never produced one.

The client is responsible for:

- Maintaining the underlying HTTP client(s)
- Converting transport failures into the crawl error taxonomy
- Converting HTTP responses into FetchResult objects

Status codes are not interpreted here; the coordinator classifies them.
"""

from __future__ import annotations

import logging
import ssl
from typing import Any, Protocol, runtime_checkable

import httpx

from trawl.common.exceptions import (
    InvalidURLException,
    PermanentRequestException,
    RequestTimeoutException,
    TransientNetworkException,
)
from trawl.common.urls import ensure_fetchable
from trawl.data_types import FetchResult, ProxyHandle

logger = logging.getLogger(__name__)


@runtime_checkable
class FetchClient(Protocol):
    """Interface consumed by the coordinator.

    Implementations may be a plain HTTP client or a browser-rendering
    engine.
    """

    async def fetch(
        self, url: str, proxy: ProxyHandle, timeout: float | None
    ) -> FetchResult:
        """Fetch ``url`` through ``proxy``.

        Raises:
            TransientException: Network failures and timeouts.
            PermanentRequestException: Malformed URLs, unsupported schemes.
        """
        ...

    async def close(self) -> None: ...


class HttpxFetchClient:
    """Fetch client backed by httpx.AsyncClient.

    One AsyncClient is kept per proxy URL (httpx binds proxies at client
    construction), created on first use.

    With ``max_bytes`` set, the body is streamed and reading stops after
    that many bytes. This is the cheap tier of a two-tier crawl: enough of
    the page for link discovery and the content filter, without paying for
    the whole body.

    Example::

        client = HttpxFetchClient(max_bytes=64 * 1024)
        result = await client.fetch(
            "https://example.com/", DIRECT, timeout=10.0
        )
        await client.close()
    """

    def __init__(
        self,
        max_bytes: int | None = None,
        headers: dict[str, str] | None = None,
        follow_redirects: bool = True,
        ssl_context: ssl.SSLContext | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the fetch client.

        Args:
            max_bytes: Stop reading the body after this many bytes. None
                reads the whole body.
            headers: Default headers sent with every request.
            follow_redirects: Whether to follow redirects.
            ssl_context: Optional SSL context for HTTPS connections.
            transport: Optional httpx transport (tests use
                httpx.MockTransport). Applies to every proxy client.
        """
        self.max_bytes = max_bytes
        self._headers = headers or {}
        self._follow_redirects = follow_redirects
        self._ssl_context = ssl_context
        self._transport = transport
        self._clients: dict[str | None, httpx.AsyncClient] = {}

    def _client_for(self, proxy: ProxyHandle) -> httpx.AsyncClient:
        client = self._clients.get(proxy.proxy_url)
        if client is None:
            kwargs: dict[str, Any] = {
                "headers": self._headers,
                "follow_redirects": self._follow_redirects,
            }
            if self._ssl_context:
                kwargs["verify"] = self._ssl_context
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif proxy.proxy_url:
                kwargs["proxy"] = proxy.proxy_url
            client = httpx.AsyncClient(**kwargs)
            self._clients[proxy.proxy_url] = client
        return client

    async def close(self) -> None:
        """Close every HTTP client and release resources."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def __aenter__(self) -> HttpxFetchClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def fetch(
        self, url: str, proxy: ProxyHandle, timeout: float | None
    ) -> FetchResult:
        """Fetch a URL and return the FetchResult.

        Args:
            url: Absolute http(s) URL.
            proxy: Identity to send the request through.
            timeout: Request timeout in seconds. None means no timeout.

        Returns:
            FetchResult for any HTTP response, whatever its status.

        Raises:
            InvalidURLException: If the URL is malformed or not http(s).
            RequestTimeoutException: If the request times out.
            PermanentRequestException: On a redirect loop.
            TransientNetworkException: On connection or decoding errors.
        """
        ensure_fetchable(url)
        client = self._client_for(proxy)

        try:
            async with client.stream(
                "GET", url, timeout=httpx.Timeout(timeout)
            ) as http_response:
                content, truncated = await self._read_body(http_response)
                return FetchResult(
                    url=str(http_response.url),
                    status_code=http_response.status_code,
                    content=content,
                    headers=dict(http_response.headers),
                    truncated=truncated,
                )
        except httpx.TimeoutException as e:
            raise RequestTimeoutException(
                url=url, timeout_seconds=timeout
            ) from e
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise InvalidURLException(url, str(e)) from e
        except httpx.TooManyRedirects as e:
            raise PermanentRequestException(url, f"redirect loop: {e}") from e
        except httpx.RequestError as e:
            # TransportError, DecodingError and anything httpx adds later
            raise TransientNetworkException(
                url, f"{type(e).__name__}: {e}"
            ) from e

    async def _read_body(
        self, http_response: httpx.Response
    ) -> tuple[bytes, bool]:
        if self.max_bytes is None:
            return await http_response.aread(), False

        chunks: list[bytes] = []
        size = 0
        async for chunk in http_response.aiter_bytes():
            chunks.append(chunk)
            size += len(chunk)
            if size >= self.max_bytes:
                return b"".join(chunks)[: self.max_bytes], True
        return b"".join(chunks), False
