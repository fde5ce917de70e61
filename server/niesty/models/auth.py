from datetime import datetime
from typing import Optional, Literal
from uuid import UUID
from pydantic import BaseModel

UserRole = Literal["creator", "business", "admin"]


class TokenPayload(BaseModel):
    sub: str  # user_id
    email: str
    role: UserRole
    exp: int


class CurrentUser(BaseModel):
    id: UUID
    email: str
    role: UserRole
    full_name: Optional[str] = None


class UserResponse(BaseModel):
    id: UUID
    email: str
    role: UserRole
    full_name: Optional[str] = None
    username: Optional[str] = None
    is_active: bool
    created_at: datetime
