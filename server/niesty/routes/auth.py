from fastapi import APIRouter, Depends, HTTPException, status

from ..database import get_connection
from ..dependencies import get_current_user
from ..models.auth import CurrentUser, UserResponse

router = APIRouter()


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: CurrentUser = Depends(get_current_user)):
    """Get the current user's account."""
    async with get_connection() as conn:
        user = await conn.fetchrow(
            """SELECT id, email, role, full_name, username, is_active, created_at
               FROM users WHERE id = $1""",
            current_user.id
        )

    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    return UserResponse(**dict(user))
