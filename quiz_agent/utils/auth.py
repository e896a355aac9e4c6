"""
Bearer-token authentication: HS256 JWTs signed with the Supabase project
secret; the ``sub`` claim is the caller id.
"""

from typing import Optional

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..errors import AuthError
from .config import Settings, get_settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_caller_id(token: str, settings: Settings) -> str:
    if not settings.supabase_jwt_secret:
        raise AuthError(details="JWT secret not configured")
    try:
        payload = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        raise AuthError(details="token expired")
    except jwt.InvalidTokenError as e:
        raise AuthError(details=f"invalid token: {e}")

    caller_id = payload.get("sub")
    if not caller_id:
        raise AuthError(details="token has no subject")
    return caller_id


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> str:
    if credentials is None or not credentials.credentials:
        raise AuthError(details="missing authorization header")
    caller_id = decode_caller_id(credentials.credentials, settings)
    logger.debug("✅ Caller authenticated", caller_id=caller_id)
    return caller_id
