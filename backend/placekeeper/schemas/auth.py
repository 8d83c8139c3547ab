# placekeeper/schemas/auth.py
"""
Pydantic schemas for authentication endpoints.
Input validation mirrors what the web client enforces, so a failure here is
reported as 400 VALIDATION_ERROR with the first message.
"""
import re

from pydantic import BaseModel, Field, field_validator, model_validator

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def normalize_email(value: str) -> str:
    value = (value or "").strip().lower()
    if not EMAIL_RE.match(value):
        raise ValueError("Invalid email address")
    if len(value) > 255:
        raise ValueError("Email address is too long")
    return value


def check_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(value) > 255:
        raise ValueError("Password is too long")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("Password must contain at least one number")
    return value


class RegisterIn(BaseModel):
    email: str
    username: str
    password: str

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return normalize_email(v)

    @field_validator("username")
    @classmethod
    def _username(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Username must be less than 50 characters")
        if not USERNAME_RE.match(v):
            raise ValueError("Username can only contain letters, numbers, underscores, and hyphens")
        return v

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        return check_password_strength(v)


class LoginIn(BaseModel):
    email: str
    password: str = Field(min_length=1)
    rememberMe: bool = False

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return normalize_email(v)


class EmailIn(BaseModel):
    """Body carrying only an email (forgot-password, resend-verification)."""
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return normalize_email(v)


class ChangePasswordIn(BaseModel):
    currentPassword: str = Field(min_length=1)
    newPassword: str
    confirmPassword: str

    @field_validator("newPassword")
    @classmethod
    def _new(cls, v: str) -> str:
        return check_password_strength(v)

    @model_validator(mode="after")
    def _consistent(self):
        if self.newPassword != self.confirmPassword:
            raise ValueError("Passwords don't match")
        if self.newPassword == self.currentPassword:
            raise ValueError("New password must be different from current password")
        return self


class ResetPasswordIn(BaseModel):
    token: str = Field(min_length=1)
    newPassword: str
    autoLogin: bool = False

    @field_validator("newPassword")
    @classmethod
    def _new(cls, v: str) -> str:
        return check_password_strength(v)


class ChangeEmailRequestIn(BaseModel):
    newEmail: str
    currentPassword: str = Field(min_length=1)

    @field_validator("newEmail")
    @classmethod
    def _email(cls, v: str) -> str:
        return normalize_email(v)


class ChangeEmailVerifyIn(BaseModel):
    token: str = Field(min_length=1)


class ChangeEmailCancelIn(BaseModel):
    cancelToken: str = Field(min_length=1)


class ChangeUsernameIn(BaseModel):
    newUsername: str
    currentPassword: str = Field(min_length=1)

    @field_validator("newUsername")
    @classmethod
    def _username(cls, v: str) -> str:
        v = v.strip().lower()
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Username must be 50 characters or less")
        if not USERNAME_RE.match(v):
            raise ValueError("Username can only contain letters, numbers, hyphens, and underscores")
        return v
