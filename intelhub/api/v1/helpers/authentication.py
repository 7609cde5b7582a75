"""
Authentication for the intelligence API.

Two credentials are accepted:

- ``Authorization: Bearer <jwt>`` signed with ``settings.secret_key``
  (HS256); the ``sub`` claim identifies the user.
- ``X-API-Token: <token>`` equal to ``settings.api_token``, for
  service-to-service callers. Jobs it creates carry no user id.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import Request
from jose import JWTError, jwt

from intelhub.api.v1.helpers.responses import unauthorized_response
from intelhub.config import settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 30


class AuthenticatedPrincipal:
    """Container for an authenticated user or service token."""

    def __init__(self, user_id: str | None = None, via_api_token: bool = False):
        self.user_id = user_id
        self.via_api_token = via_api_token


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def validate_jwt_token(jwt_token: str) -> AuthenticatedPrincipal:
    try:
        payload = jwt.decode(jwt_token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        raise unauthorized_response("Invalid JWT")

    user_id = payload.get("sub")
    if user_id is None:
        raise unauthorized_response("No user id found in token")
    return AuthenticatedPrincipal(user_id=str(user_id))


def validate_api_token(api_token: str) -> AuthenticatedPrincipal:
    if not settings.api_token or not secrets.compare_digest(
        api_token.encode("utf-8"), settings.api_token.encode("utf-8")
    ):
        raise unauthorized_response("Invalid or inactive token")
    return AuthenticatedPrincipal(via_api_token=True)


async def get_current_user(request: Request) -> AuthenticatedPrincipal:
    api_token = request.headers.get("X-API-Token")
    auth_header = request.headers.get("Authorization")
    jwt_token = (
        auth_header[7:]
        if auth_header and auth_header.lower().startswith("bearer ")
        else None
    )

    if api_token:
        return validate_api_token(api_token)
    if jwt_token:
        return validate_jwt_token(jwt_token)

    raise unauthorized_response("No authentication method found")
