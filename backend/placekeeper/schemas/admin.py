# placekeeper/schemas/admin.py
"""
Pydantic schemas for admin user management endpoints.
"""
from typing import Optional

from pydantic import BaseModel, field_validator

from placekeeper.schemas.auth import check_password_strength


class AdminUserUpdateIn(BaseModel):
    """
    Request model for updating account flags.
    All fields are optional - only provided fields will be updated.
    """
    isActive: Optional[bool] = None  # False deactivates and signs the user out
    isAdmin: Optional[bool] = None   # Cannot demote self or the last admin
    emailVerified: Optional[bool] = None


class AdminResetPasswordIn(BaseModel):
    """Admin-initiated password reset; the user is signed out everywhere."""
    newPassword: str

    @field_validator("newPassword")
    @classmethod
    def _new(cls, v: str) -> str:
        return check_password_strength(v)
