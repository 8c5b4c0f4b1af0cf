"""
Session verification for FastAPI endpoints
"""

from fastapi import Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from typing import Optional
import hashlib
import hmac
import structlog
from config import settings
from errors import UnauthorizedError

logger = structlog.get_logger()

# Session token header name
SESSION_TOKEN_HEADER = "X-Session-Token"

# Initialize session token security
bearer_scheme = HTTPBearer(auto_error=False)
session_token_header = APIKeyHeader(name=SESSION_TOKEN_HEADER, auto_error=False)


def _sign(user_id: str, secret: Optional[str] = None) -> str:
    key = (secret or settings.SESSION_SECRET).encode()
    return hmac.new(key, user_id.encode(), hashlib.sha256).hexdigest()


def issue_session_token(user_id: str, secret: Optional[str] = None) -> str:
    """
    Mint a session token for ``user_id``

    Token format: ``<user_id>.<hex hmac-sha256(secret, user_id)>``
    """
    return f"{user_id}.{_sign(user_id, secret)}"


def verify_token(token: Optional[str], secret: Optional[str] = None) -> Optional[str]:
    """
    Verify a session token

    Returns:
        The user id, or None when the token is missing or its signature
        does not match
    """
    if not token or "." not in token:
        return None

    user_id, _, signature = token.rpartition(".")
    if not user_id or not signature:
        return None

    if not hmac.compare_digest(_sign(user_id, secret), signature):
        return None

    return user_id


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    session_token: Optional[str] = Security(session_token_header),
) -> str:
    """
    Resolve the authenticated user from the request

    Usage:
        @router.get("/protected")
        async def protected_route(user_id: str = Depends(get_current_user)):
            return {"userId": user_id}
    """
    token = credentials.credentials if credentials else session_token

    if not token:
        raise UnauthorizedError("Session token missing. Provide Authorization: Bearer or X-Session-Token header.")

    user_id = verify_token(token)
    if not user_id:
        logger.warning("session_token_rejected")
        raise UnauthorizedError("Invalid session token")

    return user_id
