from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .. import __version__
from .auth import AuthGate
from .config import GatewayConfig
from .content import ContentNormalizer
from .errors import GatewayError, translate_error
from .logging_utils import JsonlLogger
from .relay import UpstreamRelay

logger = logging.getLogger(__name__)

CHAT_OPERATION = "/v1/chat/completions"
MODELS_OPERATION = "/v1/models"
EMBEDDINGS_OPERATION = "/v1/embeddings"


class AccessLogMiddleware:
    """Writes one JSONL record per HTTP request once its response is finished."""

    def __init__(self, app: ASGIApp, access_log: JsonlLogger):
        self.app = app
        self.access_log = access_log

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        seen: Dict[str, Any] = {"status": 500, "stream": False}

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                seen["status"] = message["status"]
                for key, value in message.get("headers", []):
                    if key.lower() == b"content-type":
                        seen["stream"] = value.startswith(b"text/event-stream")
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            client = scope.get("client")
            self.access_log.log(
                {
                    "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
                    "method": scope.get("method"),
                    "path": scope.get("path"),
                    "status": seen["status"],
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    "client": client[0] if client else None,
                    "stream": seen["stream"],
                }
            )


async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.detail)


async def _guarded(operation: str, call: Awaitable[Response]) -> Response:
    try:
        return await call
    except Exception as exc:  # noqa: BLE001
        error = translate_error(exc, operation)
        if error is exc:
            raise
        raise error from exc


def create_app(
    cfg: GatewayConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the gateway application around one immutable configuration.

    ``transport`` replaces the outbound network layer (tests pass an
    ``httpx.MockTransport``). Raises ``ConfigError`` if ``cfg`` is unusable.
    """

    cfg.validate()
    relay = UpstreamRelay(cfg, transport=transport)
    normalizer = ContentNormalizer(cfg)
    require_auth = AuthGate(cfg.authorization_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "[app] LEAFLOW API %s forwarding to %s (inbound auth %s)",
            __version__,
            cfg.upstream_base_url,
            "enabled" if cfg.auth_enabled else "disabled",
        )
        try:
            yield
        finally:
            await relay.aclose()

    app = FastAPI(title="LEAFLOW API", version=__version__, lifespan=lifespan)
    app.state.config = cfg
    app.state.relay = relay
    app.state.normalizer = normalizer

    app.add_exception_handler(GatewayError, _gateway_error_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_allow_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if cfg.enable_access_log:
        app.add_middleware(
            AccessLogMiddleware,
            access_log=JsonlLogger(cfg.access_log_path, cfg.max_log_bytes),
        )

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return f"LEAFLOW API {__version__}"

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get(MODELS_OPERATION, dependencies=[Depends(require_auth)])
    async def list_models(request: Request):
        return await _guarded(MODELS_OPERATION, relay.fetch_models(request.url.query))

    @app.post(CHAT_OPERATION, dependencies=[Depends(require_auth)])
    async def chat_completions(request: Request):
        async def handle() -> Response:
            payload = await normalizer.normalize(request)
            return await relay.relay_chat(payload)

        return await _guarded(CHAT_OPERATION, handle())

    @app.post(EMBEDDINGS_OPERATION, dependencies=[Depends(require_auth)])
    async def embeddings(request: Request):
        async def handle() -> Response:
            return await relay.relay_embeddings(await request.body())

        return await _guarded(EMBEDDINGS_OPERATION, handle())

    return app
