from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Request

from .errors import err_unauthorized


def authorize(header: Optional[str], configured_key: Optional[str]) -> bool:
    """Return True when ``header`` is exactly ``Bearer <configured_key>``.

    No key configured means every request is allowed. The comparison is
    byte-exact: no trimming and no case folding of the scheme.
    """

    if not configured_key:
        return True
    if header is None:
        return False
    expected = f"Bearer {configured_key}".encode("utf-8")
    # Starlette decodes header bytes as latin-1; undo that to compare raw bytes.
    try:
        received = header.encode("latin-1")
    except UnicodeEncodeError:
        received = header.encode("utf-8")
    return hmac.compare_digest(received, expected)


class AuthGate:
    """FastAPI dependency rejecting unauthorized callers before any work starts."""

    def __init__(self, configured_key: Optional[str]):
        self._key = configured_key

    async def __call__(self, request: Request) -> None:
        if not authorize(request.headers.get("authorization"), self._key):
            raise err_unauthorized()
