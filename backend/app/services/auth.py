from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.config import settings
from app.errors import Unauthorized
from app.utils.logger import logger

# Missing credentials surface as our own Unauthorized, not FastAPI's 403.
security = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.ALGORITHM)
    return encoded_jwt


def decode_user_id(token: str) -> str:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.error(f"JWT validation error: {str(e)}")
        raise Unauthorized("Could not validate credentials")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthorized("Could not validate credentials")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Identity resolver: the calling user's id from a bearer token.

    Gateways that authenticate upstream may pass ``X-User-Id`` instead when
    ``ALLOW_HEADER_IDENTITY`` is enabled.
    """
    if credentials and credentials.credentials:
        return decode_user_id(credentials.credentials)

    if settings.ALLOW_HEADER_IDENTITY:
        header_user_id = request.headers.get("X-User-Id", "").strip()
        if header_user_id:
            return header_user_id

    logger.warning(f"Unauthenticated request to {request.url.path}")
    raise Unauthorized()
