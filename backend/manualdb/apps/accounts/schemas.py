# backend/manualdb/apps/accounts/schemas.py

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr

from .models import AccountRole


class UserRead(BaseModel):
    id: str
    email: str
    full_name: str
    role: AccountRole
    is_active: bool
    is_superuser: bool
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserCreate(BaseModel):
    email: EmailStr
    full_name: str
    role: AccountRole = AccountRole.MANAGER
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserRead


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
