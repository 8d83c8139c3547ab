# placekeeper/models/username_change.py
from tortoise import fields, models


class UsernameChange(models.Model):
    """
    One completed rename of a user. The rows feed the 30-day and yearly
    rename limits and are removed together with the account.
    """
    id = fields.IntField(pk=True)
    user = fields.ForeignKeyField(
        "models.User", related_name="username_changes", on_delete=fields.CASCADE
    )
    old_username = fields.CharField(max_length=50)
    new_username = fields.CharField(max_length=50)
    ip_address = fields.CharField(max_length=64, null=True)
    user_agent = fields.CharField(max_length=512, null=True)
    completed_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "username_changes"
