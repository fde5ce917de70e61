"""Core authentication and authorization dependencies."""
from typing import AsyncIterator
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .database import get_connection
from .models.auth import CurrentUser
from .services.auth import decode_token
from .services.deal_store import PostgresDealStore
from .services.deal_workflow import DealWorkflow

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """Dependency to get the current authenticated user."""
    payload = decode_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    async with get_connection() as conn:
        user_row = await conn.fetchrow(
            "SELECT id, email, role, full_name, is_active FROM users WHERE id = $1",
            UUID(payload.sub)
        )

    if not user_row or not user_row["is_active"]:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    return CurrentUser(
        id=user_row["id"],
        email=user_row["email"],
        role=user_row["role"],
        full_name=user_row["full_name"],
    )


def require_roles(*roles):
    """Dependency factory for role-based access control."""
    async def role_checker(current_user: CurrentUser = Depends(get_current_user)):
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(roles)}"
            )
        return current_user
    return role_checker


require_admin = require_roles("admin")


async def get_deal_workflow() -> AsyncIterator[DealWorkflow]:
    """Yield a deal workflow bound to a pooled connection for the request."""
    async with get_connection() as conn:
        yield DealWorkflow(PostgresDealStore(conn))
