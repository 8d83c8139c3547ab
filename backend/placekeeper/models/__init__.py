# placekeeper/models/__init__.py
"""
Database models module initialization.
Exports all database models for convenient imports throughout the application.

Models exported:
- User: account credentials, verification/reset tokens, lockout counters
- Session: the single live login of a user
- SecurityLog: append-only audit trail (with SecurityEventType)
- EmailChangeRequest: pending email address change
- UsernameChange: completed username change, counted by the rename limits
"""
from .user import User
from .session import Session
from .security_log import SecurityLog, SecurityEventType
from .email_change import EmailChangeRequest
from .username_change import UsernameChange
