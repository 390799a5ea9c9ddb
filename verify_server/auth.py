"""
Platform principal for the logged-in account endpoints.
Validates the Bearer token issued by the platform's own login system; no session management here.
"""
import logging
from dataclasses import dataclass
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from verify_server.config import PLATFORM_JWT_AUDIENCE, PLATFORM_JWT_SECRET

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: str


def _unauthorized(description: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "unauthorized", "error_description": description},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Principal:
    """Dependency: valid platform Bearer token -> Principal. Raises 401 otherwise."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Please sign in to continue")
    try:
        claims = jwt.decode(
            credentials.credentials,
            PLATFORM_JWT_SECRET,
            algorithms=["HS256"],
            audience=PLATFORM_JWT_AUDIENCE,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Session expired")
    except jwt.PyJWTError as e:
        logger.debug("Platform token verification failed: %s", e)
        raise _unauthorized("Invalid session token")
    return Principal(user_id=str(claims["sub"]))
