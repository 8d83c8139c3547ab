# placekeeper/models/user.py
"""
Database model for users.
Represents an account in the system: credentials, verification and reset
tokens, lockout counters, and the admin/active flags checked on every
authorized request.
"""
from tortoise import fields, models


class User(models.Model):
    """
    User database model (the credential store).

    Relationships:
    - Has at most one Session (one-to-one, via related_name="session")
    - Has many SecurityLogs (nullable FK, rows survive account deletion)
    - Has many EmailChangeRequests
    - Has many UsernameChanges

    Lockout:
    - failed_login_attempts counts consecutive wrong passwords
    - locked_until is null, or the moment the current lock ends; a lock in
      the past is cleared lazily on the next login attempt
    """
    id = fields.IntField(pk=True)
    email = fields.CharField(max_length=255, unique=True, index=True)  # Stored lower-cased
    username = fields.CharField(max_length=50, unique=True, index=True)
    password_hash = fields.CharField(max_length=255)  # Never store plain text

    email_verified = fields.BooleanField(default=False)
    is_active = fields.BooleanField(default=True)
    is_admin = fields.BooleanField(default=False)

    failed_login_attempts = fields.IntField(default=0)
    locked_until = fields.DatetimeField(null=True)
    last_login_at = fields.DatetimeField(null=True)

    verification_token = fields.CharField(max_length=64, null=True, index=True)
    verification_token_expiry = fields.DatetimeField(null=True)
    reset_token = fields.CharField(max_length=64, null=True, index=True)
    reset_token_expiry = fields.DatetimeField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        """Tortoise ORM metadata configuration."""
        table = "users"

    def to_public(self) -> dict:
        """Serialize without secrets (hash, tokens, lockout counters)."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "emailVerified": self.email_verified,
            "isActive": self.is_active,
            "isAdmin": self.is_admin,
            "lastLoginAt": self.last_login_at.isoformat() if self.last_login_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
