from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from coldstart.core.logging import get_logger
from coldstart.shared import ProxyFailure

logger = get_logger(__name__)

DEFAULT_REQUEST_TIMEOUT = 10.0

_HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def _proxy_request_headers(request: Request) -> list[tuple[str, str]]:
    blocked = _HOP_BY_HOP_HEADERS | {"host"}
    return [
        (key, value)
        for key, value in request.headers.items()
        if key.lower() not in blocked
    ]


def _proxy_response_headers(headers: httpx.Headers) -> list[tuple[bytes, bytes]]:
    # headers.raw keeps repeated headers such as Set-Cookie and their casing
    return [
        (key, value)
        for key, value in headers.raw
        if key.decode("latin-1").lower() not in _HOP_BY_HOP_HEADERS
    ]


def _has_body(request: Request) -> bool:
    return (
        "content-length" in request.headers
        or "transfer-encoding" in request.headers
    )


def build_upstream_url(address: str, request: Request) -> str:
    upstream_url = f"{address.rstrip('/')}{request.url.path}"
    query = request.url.query
    if query:
        upstream_url = f"{upstream_url}?{query}"
    return upstream_url


class RequestForwarder:
    """Mirrors inbound requests to a backend and streams the response back.

    Bodies are streamed in both directions. Failures are never retried, since
    a retry could repeat a non-idempotent request against the backend.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False, trust_env=False)
        return self._client

    async def aclose(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await client.aclose()

    async def _request_body(self, request: Request) -> AsyncIterator[bytes]:
        async for chunk in request.stream():
            if chunk:
                yield chunk

    async def forward(
        self,
        request: Request,
        address: str,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> StreamingResponse:
        """Send ``request`` to ``address`` and return the streamed response.

        ``timeout`` bounds the wait for the response headers as well as each
        connect, read, and write on the connection.

        Raises:
            ProxyFailure: On any transport error or timeout.
        """
        client = self._get_client()
        upstream_url = build_upstream_url(address, request)
        outbound = client.build_request(
            method=request.method,
            url=upstream_url,
            headers=_proxy_request_headers(request),
            content=self._request_body(request) if _has_body(request) else None,
            timeout=httpx.Timeout(timeout),
        )
        try:
            upstream_response = await asyncio.wait_for(
                client.send(outbound, stream=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProxyFailure(
                f"Backend at {address} did not respond within {timeout:g}s"
            ) from exc
        except httpx.TransportError as exc:
            raise ProxyFailure(f"Backend at {address} unavailable: {exc}") from exc

        response = StreamingResponse(
            self._stream_body(upstream_response, upstream_url),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers = _proxy_response_headers(upstream_response.headers)
        return response

    async def _stream_body(
        self,
        upstream_response: httpx.Response,
        upstream_url: str,
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        except httpx.TransportError as exc:
            # Headers are already sent; all that is left is to cut the stream.
            logger.warning("Backend response from %s interrupted: %s", upstream_url, exc)
            raise ProxyFailure(f"Backend response interrupted: {exc}") from exc
