# placekeeper/models/security_log.py
from enum import Enum

from tortoise import fields, models


class SecurityEventType(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_SUCCESS = "password_reset_success"
    PASSWORD_CHANGE = "password_change"
    FAILED_LOGIN = "failed_login"
    ACCOUNT_LOCKED = "account_locked"
    EMAIL_VERIFICATION = "email_verification"
    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"
    ACCOUNT_DELETED = "account_deleted"


class SecurityLog(models.Model):
    """
    Append-only audit row. Written around every security-relevant action and
    never updated; the user link is nulled when the account is deleted.
    """
    id = fields.IntField(pk=True)
    user = fields.ForeignKeyField(
        "models.User", related_name="security_logs", null=True, on_delete=fields.SET_NULL
    )
    event_type = fields.CharEnumField(SecurityEventType, max_length=32, index=True)
    ip_address = fields.CharField(max_length=64, null=True)
    user_agent = fields.CharField(max_length=512, null=True)
    success = fields.BooleanField(default=True)
    metadata = fields.JSONField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True, index=True)

    class Meta:
        table = "security_logs"
        ordering = ["-created_at"]
