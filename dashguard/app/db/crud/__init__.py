"""CRUD operations package.

- sessions.py: user session lookups and revocation
- audit.py: security audit trail
"""

from dashguard.app.db.crud.sessions import (
    create_session,
    delete_session,
    delete_sessions_except,
    get_session_with_user,
    list_active_sessions,
    touch_session,
    update_session_device,
)

from dashguard.app.db.crud.audit import (
    count_audit_logs,
    create_audit_log,
    list_audit_logs,
)

__all__ = [
    # Session operations
    "create_session",
    "delete_session",
    "delete_sessions_except",
    "get_session_with_user",
    "list_active_sessions",
    "touch_session",
    "update_session_device",
    # Audit operations
    "count_audit_logs",
    "create_audit_log",
    "list_audit_logs",
]
