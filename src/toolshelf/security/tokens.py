"""JWT creation and validation.

Uses python-jose. Tokens are signed with the application SECRET_KEY
(HS256 by default). The identity service in front of Toolshelf mints them;
``create_access_token`` exists for that service, local development and tests.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt

from ..config import get_settings

logger = logging.getLogger(__name__)


def create_access_token(
    caller_id: str,
    email: Optional[str] = None,
    email_verified: bool = False,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed access token.

    Args:
        caller_id: Stable user id for the ``sub`` claim.
        email: Optional email claim.
        email_verified: Whether the identity provider verified the account.
        expires_delta: Custom expiry. Falls back to config ``access_token_expire_minutes``.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    payload: Dict[str, Any] = {
        "sub": caller_id,
        "email_verified": email_verified,
        "type": "access",
        "iat": now,
        "exp": now + expires_delta,
    }
    if email:
        payload["email"] = email
    if settings.jwt_issuer:
        payload["iss"] = settings.jwt_issuer
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT.

    Validates signature, expiry and, when configured, issuer and audience.

    Raises:
        JWTError: On invalid signature, expired token, or malformed JWT.
    """
    settings = get_settings()
    options = {"verify_aud": bool(settings.jwt_audience)}
    return jwt.decode(
        token,
        settings.secret_key,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
        options=options,
    )
