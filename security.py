"""
security.py — JWT verification and the current-user dependency.

Tokens are minted by the upstream identity provider; this service only
verifies them. The `sub` claim is the user id.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models import User

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

# Shared by main.py (default limits) and routers (per-route limits)
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_general])


# ─────────────────────────────────────────────
# JWT Token Management
# ─────────────────────────────────────────────

def create_access_token(
    user_id: str,
    expires_in: timedelta = timedelta(hours=1),
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """Sign a token for `user_id` with the service secret (tests, local tooling)."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {"sub": user_id, "iat": now, "exp": now + expires_in}
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """Decode and validate a JWT, returning the full payload.

    Raises:
        JWTError: if the token is invalid, expired, or tampered with.
    """
    options = {"verify_aud": bool(settings.jwt_audience)}
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience or None,
        options=options,
    )


def get_token_subject(token: str) -> str | None:
    """Safely extract the 'sub' claim; returns None on any error."""
    try:
        payload = verify_token(token)
        return payload.get("sub")
    except JWTError:
        return None


# ─────────────────────────────────────────────
# Shared dependency
# ─────────────────────────────────────────────

async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the bearer token to an active User or raise 401."""
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise unauthorized

    user_id = get_token_subject(credentials.credentials)
    if not user_id:
        raise unauthorized

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        logger.info("Token for unknown or inactive user %s", user_id)
        raise unauthorized
    return user
