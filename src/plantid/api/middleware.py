"""Middleware: API key authentication.

Clients may present the key either as ``Authorization: Bearer <key>`` or in
an ``X-API-Key`` header. Every ``/api/v1`` route is guarded.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from plantid.config import Settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

_bearer_scheme = HTTPBearer(auto_error=False)
_header_scheme = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _key_matches(candidate: str | None, expected: str) -> bool:
    if not candidate:
        return False
    return secrets.compare_digest(candidate.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_header_scheme)],
) -> None:
    """Reject the request unless it carries PLANTID_API_KEY, when one is configured."""
    settings: Settings = request.app.state.settings
    expected = settings.api_key
    if expected is None:
        return

    bearer_key = bearer.credentials if bearer is not None else None
    if _key_matches(bearer_key, expected) or _key_matches(header_key, expected):
        return

    logger.warning("Rejected %s %s: invalid or missing API key", request.method, request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
