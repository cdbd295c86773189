from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Request

from inspired_portfolio.core.errors import PortfolioError
from inspired_portfolio.core.settings import get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TTL = timedelta(days=7)


def generate_token(user_id: str, secret: str, ttl: timedelta = TOKEN_TTL) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode({"userId": user_id, "iat": now, "exp": now + ttl}, secret, algorithm=ALGORITHM)


def verify_token(token: str, secret: str) -> str | None:
    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None
    user_id = claims.get("userId")
    return str(user_id) if user_id else None


def require_user(request: Request) -> str:
    """FastAPI dependency: the user id from the session cookie, or 401."""
    settings = get_settings()
    token = request.cookies.get(settings.auth_cookie_name)
    user_id = verify_token(token, settings.jwt_secret) if token else None
    if not user_id:
        logger.debug("Rejected request to %s without a valid session", request.url.path)
        raise PortfolioError(401, "Authentication required")
    return user_id
