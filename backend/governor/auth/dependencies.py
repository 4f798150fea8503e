# backend/governor/auth/dependencies.py
"""
FastAPI dependency protecting the control API.

Operators authenticate with `Authorization: Bearer <ADMIN_API_TOKEN>`. When
no token is configured the API is open (validate_config refuses that in
production).
"""

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from governor.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Returns the operator identity used in audit fields."""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return "admin"

    if credentials is None or not hmac.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return "admin"
