# placekeeper/models/email_change.py
from tortoise import fields, models


class EmailChangeRequest(models.Model):
    """
    Pending switch of a user's email address.
    - token: sent to the new address, completes the change
    - cancel_token: sent to the old address, aborts the change
    - completed_at / cancelled_at: at most one of them is ever set
    """
    id = fields.IntField(pk=True)
    user = fields.ForeignKeyField(
        "models.User", related_name="email_changes", on_delete=fields.CASCADE
    )
    old_email = fields.CharField(max_length=255)
    new_email = fields.CharField(max_length=255)
    token = fields.CharField(max_length=64, unique=True, index=True)
    cancel_token = fields.CharField(max_length=64, unique=True, index=True)
    expires_at = fields.DatetimeField()
    completed_at = fields.DatetimeField(null=True)
    cancelled_at = fields.DatetimeField(null=True)
    ip_address = fields.CharField(max_length=64, null=True)
    user_agent = fields.CharField(max_length=512, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "email_change_requests"

    @property
    def is_pending(self) -> bool:
        return self.completed_at is None and self.cancelled_at is None
