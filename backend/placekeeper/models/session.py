# placekeeper/models/session.py
from tortoise import fields, models


class Session(models.Model):
    """
    One live login per user.

    - user: one-to-one, so the table itself cannot hold two sessions for the
      same account; a new login replaces the row in place
    - token: the exact bearer string handed to the client
    - expires_at: rows past this instant are treated as revoked; they are
      never swept, only overwritten or deleted
    """
    id = fields.IntField(pk=True)
    user = fields.OneToOneField(
        "models.User", related_name="session", on_delete=fields.CASCADE
    )
    token = fields.CharField(max_length=512, unique=True, index=True)
    expires_at = fields.DatetimeField()
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "sessions"
