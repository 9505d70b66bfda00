from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from starlette.responses import Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from .config import GatewayConfig
from .errors import UpstreamError, UpstreamErrorKind

logger = logging.getLogger(__name__)

EVENT_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

# Failures where the upstream never produced a response.
_NO_RESPONSE_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class RelayedStream(StreamingResponse):
    """Event-stream response piping one upstream body to the caller.

    Chunks are forwarded exactly as read, one ``send`` per chunk, so a slow
    caller pauses upstream reads. The upstream response is closed when the
    stream ends, fails, or the caller goes away.
    """

    def __init__(self, upstream: httpx.Response):
        self.upstream = upstream
        super().__init__(
            self._pipe(),
            status_code=upstream.status_code,
            headers=EVENT_STREAM_HEADERS,
            media_type="text/event-stream",
        )

    async def _pipe(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            # Headers are already committed; the caller just sees the stream end.
            logger.error(
                "[relay] Upstream stream from %s aborted: %s",
                self.upstream.request.url,
                exc,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "[relay] Unexpected failure relaying stream from %s: %s",
                self.upstream.request.url,
                exc,
                exc_info=True,
            )
        finally:
            await self.upstream.aclose()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            if not self.upstream.is_closed:
                logger.info(
                    "[relay] Caller left before stream from %s finished; closing upstream.",
                    self.upstream.request.url,
                )
            await self.upstream.aclose()


class UpstreamRelay:
    """Sends canonical requests upstream with the service credential."""

    def __init__(
        self,
        cfg: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cfg = cfg
        self.timeout_s = cfg.request_timeout_s
        self.client = httpx.AsyncClient(
            timeout=self.timeout_s,
            transport=transport,
            follow_redirects=True,
        )
        # Streams are only bounded until the upstream starts answering.
        self._stream_timeout = httpx.Timeout(self.timeout_s, read=None)

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.cfg.inner_token}"}
        headers.update(extra)
        return headers

    def _transport_error(self, exc: Exception, url: str) -> UpstreamError:
        if isinstance(exc, (asyncio.TimeoutError, *_NO_RESPONSE_ERRORS)):
            return UpstreamError(
                UpstreamErrorKind.NO_RESPONSE,
                f"No response from {url}: {type(exc).__name__}: {exc}",
            )
        return UpstreamError(
            UpstreamErrorKind.SETUP_FAILURE,
            f"Could not send request to {url}: {type(exc).__name__}: {exc}",
        )

    async def _buffered(self, method: str, url: str, **kwargs: Any) -> Response:
        logger.debug("[relay] %s %s (buffered)", method, url)
        try:
            resp = await self.client.request(method, url, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise self._transport_error(exc, url) from exc
        if resp.status_code >= 400:
            raise UpstreamError(
                UpstreamErrorKind.HTTP_ERROR,
                f"{method} {url} returned {resp.status_code}",
                status=resp.status_code,
                body=resp.text,
            )
        return Response(
            content=resp.content,
            status_code=resp.status_code,
            media_type=resp.headers.get("content-type", "application/json"),
        )

    async def _open_stream(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        request = self.client.build_request(
            "POST",
            url,
            json=payload,
            headers=self._headers(**{"Accept-Encoding": "identity"}),
            timeout=self._stream_timeout,
        )
        logger.debug("[relay] POST %s (stream)", url)
        try:
            upstream = await asyncio.wait_for(
                self.client.send(request, stream=True), self.timeout_s
            )
        except (asyncio.TimeoutError, httpx.HTTPError, httpx.InvalidURL) as exc:
            raise self._transport_error(exc, url) from exc

        if upstream.status_code >= 400:
            try:
                raw = await asyncio.wait_for(upstream.aread(), self.timeout_s)
                body = raw.decode("utf-8", errors="replace")
            except (asyncio.TimeoutError, httpx.HTTPError):
                body = ""
            finally:
                await upstream.aclose()
            raise UpstreamError(
                UpstreamErrorKind.HTTP_ERROR,
                f"POST {url} returned {upstream.status_code}",
                status=upstream.status_code,
                body=body,
            )
        return upstream

    async def relay_chat(self, payload: Dict[str, Any]) -> Response:
        """Forward a canonical chat request; ``stream`` selects the response mode."""

        url = self.cfg.chat_url
        if payload.get("stream"):
            upstream = await self._open_stream(url, payload)
            return RelayedStream(upstream)
        return await self._buffered(
            "POST",
            url,
            json=payload,
            headers=self._headers(),
        )

    async def fetch_models(self, query: str = "") -> Response:
        return await self._buffered(
            "GET",
            self.cfg.models_url,
            params=query or None,
            headers=self._headers(),
        )

    async def relay_embeddings(self, body: bytes) -> Response:
        return await self._buffered(
            "POST",
            self.cfg.embeddings_url,
            content=body,
            headers=self._headers(**{"Content-Type": "application/json"}),
        )

    async def aclose(self) -> None:
        await self.client.aclose()
