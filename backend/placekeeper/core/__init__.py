# placekeeper/core/__init__.py
"""
Core application modules.
Contains essential infrastructure components:
- audit: Security event log (append-only)
- bootstrap: Application initialization and default admin creation
- db: Database configuration and connection management
- errors: {error, code} error responses and exception handlers
- lockout: Per-account lockout after repeated wrong passwords
- mailer: Outbound account email
- rate_limit: Per-IP request throttling with a pluggable counter store
- security: Password hashing, bearer token signing/verification
- sessions: Session ledger (one live session per user)
"""
