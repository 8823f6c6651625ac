from __future__ import annotations

import hmac
import logging
from datetime import UTC, datetime, timedelta

import jwt
from fastapi import Depends, HTTPException, Request, status

from safetrip import config
from safetrip.services.engine import get_engine

settings = config.get_settings()
log = logging.getLogger(__name__)


def get_current_user_id(request: Request) -> int:
    """
    Bearer JWT decoder using settings.SECRET_KEY.
    Tokens are issued by the auth service and carry the user id in 'sub'.
    """
    auth = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

    token = auth.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError as e:
        log.info(f"[Auth] Rejected token: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    sub = payload.get("sub")
    if sub is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token (no sub)")
    try:
        return int(sub)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid sub")


def create_access_token(user_id: int, expires_minutes: int = 60) -> str:
    """Mint a token the way the auth service does; used by dev tooling and tests."""
    now = datetime.now(UTC)
    payload = {"sub": str(user_id), "iat": now, "exp": now + timedelta(minutes=expires_minutes)}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def require_admin(request: Request, user_id: int = Depends(get_current_user_id)) -> int:
    """Allow operators only: a matching X-Admin-Key header or an email listed in ADMIN_EMAILS."""
    key = request.headers.get("x-admin-key")
    if settings.ADMIN_KEY and key and hmac.compare_digest(key, settings.ADMIN_KEY):
        return user_id

    user = get_engine().user_store.get_user(user_id)
    if user is not None and user.email.lower() in settings.ADMIN_EMAILS_LIST:
        return user_id

    log.info(f"[Auth] User {user_id} denied admin access")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
