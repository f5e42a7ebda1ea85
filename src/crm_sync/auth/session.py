"""
Session authentication

The CRM front-end authenticates users and hands this service a signed JWT whose
`sub` claim is the user id, either as a Bearer token or in the session cookie.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from crm_sync.sync.errors import ConfigurationError
from crm_sync.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _secret_key() -> str:
    if not settings.JWT_SECRET_KEY:
        raise ConfigurationError("JWT_SECRET_KEY is not configured")
    return settings.JWT_SECRET_KEY


def create_session_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed session token for a user"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {"sub": user_id, "exp": expire, "iat": datetime.now(timezone.utc)}
    return jwt.encode(claims, _secret_key(), algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str) -> Optional[str]:
    """Return the user id of a valid session token, or None"""
    secret_key = _secret_key()
    try:
        payload = jwt.decode(token, secret_key, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.info(f"Rejected session token: {e}")
        return None
    return payload.get("sub")


def _token_from_request(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(settings.SESSION_COOKIE_NAME)


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Optional[str]:
    """Current user id, or None when the request carries no valid session"""
    token = _token_from_request(request, credentials)
    if not token:
        return None
    return decode_session_token(token)


async def get_current_user(user_id: Optional[str] = Depends(get_optional_user)) -> str:
    """Current user id; rejects unauthenticated requests with 401"""
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
    return user_id
