"""
Bearer-token identity.

Tokens are issued by the auth service; this API only verifies them.  The
payload carries ``sub`` (user id) and ``role``.
"""

from __future__ import annotations

from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cabbooking.config import settings
from cabbooking.domain.entities import Identity
from cabbooking.domain.enums import UserRole
from cabbooking.errors import AuthenticationError

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> Identity:
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
        return Identity(user_id=int(payload["sub"]), role=UserRole(payload["role"]))
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Session expired. Please log in again.") from exc
    except (jwt.PyJWTError, KeyError, ValueError) as exc:
        raise AuthenticationError("Invalid authentication token") from exc


def issue_token(user_id: int, role: UserRole, **claims) -> str:
    """Token for local tooling (seed script, tests)."""
    payload = {"sub": str(user_id), "role": UserRole(role).value, **claims}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    if credentials is None:
        raise AuthenticationError("Authentication required")
    return decode_token(credentials.credentials)
