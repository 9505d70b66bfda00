"""Caller-facing error vocabulary and the upstream failure translator.

Every failure leaving the gateway is a :class:`GatewayError` whose body is a
single fixed message. Upstream payloads, exception text and stack traces are
written to the operational log only.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)

_LOGGED_BODY_LIMIT = 2_000


class GatewayError(HTTPException):
    def __init__(self, status_code: int, message: str):
        self.message = message
        super().__init__(status_code=status_code, detail={"error": message})


class ClientInputError(GatewayError):
    """Malformed or disallowed caller input; raised before any upstream call."""


class UpstreamClientError(GatewayError):
    pass


class UpstreamServerError(GatewayError):
    pass


class InternalFailure(GatewayError):
    pass


class UpstreamErrorKind(enum.Enum):
    HTTP_ERROR = "upstream_http_error"
    NO_RESPONSE = "no_response"
    SETUP_FAILURE = "transport_setup_failure"


class UpstreamError(Exception):
    """Failure produced by the relay. Never serialized to the caller."""

    def __init__(
        self,
        kind: UpstreamErrorKind,
        message: str,
        *,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.body = body


def err_unauthorized() -> ClientInputError:
    return ClientInputError(401, "Unauthorized")


def err_invalid_json_body() -> ClientInputError:
    return ClientInputError(400, "Invalid JSON body")


def err_invalid_payload_json() -> ClientInputError:
    return ClientInputError(400, "Invalid JSON in payload field")


def err_invalid_image_url() -> ClientInputError:
    return ClientInputError(400, "Invalid image URL format")


def err_unsupported_content_type() -> ClientInputError:
    return ClientInputError(400, "Unsupported content type")


def err_invalid_multipart() -> ClientInputError:
    return ClientInputError(400, "Invalid multipart body")


def err_unknown_attachment(key: str) -> ClientInputError:
    return ClientInputError(400, f"Unknown attachment reference '{key}'")


def err_attachment_type(mime: str, allowed: tuple[str, ...]) -> ClientInputError:
    return ClientInputError(
        400,
        f"Unsupported attachment type '{mime}'. Allowed types: {', '.join(allowed)}",
    )


def err_attachment_too_large(field_name: str, limit: int) -> ClientInputError:
    return ClientInputError(
        413, f"Attachment '{field_name}' exceeds the limit of {limit} bytes"
    )


def err_too_many_attachments(limit: int) -> ClientInputError:
    return ClientInputError(
        413, f"Too many attachments: at most {limit} allowed per request"
    )


def err_upstream_client(status: int) -> UpstreamClientError:
    return UpstreamClientError(status, "Client error from upstream service.")


def err_upstream_server() -> UpstreamServerError:
    return UpstreamServerError(502, "Bad Gateway. Upstream service error.")


def err_no_response() -> UpstreamServerError:
    return UpstreamServerError(502, "Bad Gateway. No response from upstream service.")


def err_internal(operation: str) -> InternalFailure:
    return InternalFailure(500, f"Internal server error during {operation} proxy.")


def _clip(body: Optional[str]) -> str:
    if not body:
        return ""
    if len(body) <= _LOGGED_BODY_LIMIT:
        return body
    return body[:_LOGGED_BODY_LIMIT] + "...[truncated]"


def translate_error(exc: BaseException, operation: str) -> GatewayError:
    """Map any failure raised while serving ``operation`` to one caller response."""

    if isinstance(exc, GatewayError):
        if isinstance(exc, ClientInputError):
            logger.info(
                "[proxy] Rejected %s request: %s (%s)",
                operation,
                exc.message,
                exc.status_code,
            )
        return exc

    if isinstance(exc, UpstreamError):
        logger.error(
            "[proxy] Error for %s: %s",
            operation,
            exc.message,
            exc_info=exc.__cause__ or exc,
        )
        if exc.kind is UpstreamErrorKind.HTTP_ERROR and exc.status is not None:
            logger.error(
                "[proxy] Upstream service responded with status %s for %s: %s",
                exc.status,
                operation,
                _clip(exc.body),
            )
            if 400 <= exc.status < 500:
                return err_upstream_client(exc.status)
            if exc.status >= 500:
                return err_upstream_server()
        elif exc.kind is UpstreamErrorKind.NO_RESPONSE:
            logger.error(
                "[proxy] No response received from upstream service for %s.",
                operation,
            )
            return err_no_response()
        else:
            logger.error(
                "[proxy] Error setting up request to upstream service for %s: %s",
                operation,
                exc.message,
            )
        return err_internal(operation)

    logger.error(
        "[proxy] Unexpected failure for %s: %s",
        operation,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return err_internal(operation)
