"""Caller authentication for the enrichment API.

Feature-flagged via ``ENABLE_AUTH``. When disabled, every request acts as one
verified development caller.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from jose import JWTError

from ..config import get_settings
from ..enrichment.exceptions import Unauthenticated
from .tokens import decode_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerContext:
    """Resolved identity of the caller."""

    caller_id: str
    verified: bool
    email: Optional[str] = None


def verify_caller(token: str) -> CallerContext:
    """Turn a bearer token into a caller identity.

    Raises:
        Unauthenticated: token missing, malformed, expired or without a subject.
    """
    if not token:
        raise Unauthenticated("Authentication required.")
    try:
        payload = decode_token(token)
    except JWTError as exc:
        logger.debug("Rejected token: %s", exc)
        raise Unauthenticated("Invalid or expired authentication token.") from exc

    if payload.get("type", "access") != "access":
        raise Unauthenticated("Invalid or expired authentication token.")

    caller_id = payload.get("sub")
    if not caller_id or not isinstance(caller_id, str):
        raise Unauthenticated("Invalid authentication subject.")

    return CallerContext(
        caller_id=caller_id,
        verified=payload.get("email_verified") is True,
        email=payload.get("email"),
    )


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_caller(request: Request) -> CallerContext:
    """FastAPI dependency: the authenticated caller for this request."""
    settings = get_settings()
    if not settings.enable_auth:
        return CallerContext(caller_id=settings.dev_caller_id, verified=True)

    token = _bearer_token(request)
    if token is None:
        raise Unauthenticated("Missing or invalid Authorization header")
    return verify_caller(token)
