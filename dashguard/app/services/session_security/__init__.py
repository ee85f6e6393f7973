"""Session anomaly detection and concurrent session enforcement."""

from dashguard.app.services.session_security.models import (
    AnomalyHandlingResult,
    AnomalyPolicy,
    AnomalyType,
    ConnectionContext,
    SessionAnomaly,
    SessionHealth,
    SessionLookup,
    SessionRecord,
    Severity,
)
from dashguard.app.services.session_security.service import SessionSecurityService
from dashguard.app.services.session_security.store import SessionStore, SqlSessionStore

__all__ = [
    "AnomalyHandlingResult",
    "AnomalyPolicy",
    "AnomalyType",
    "ConnectionContext",
    "SessionAnomaly",
    "SessionHealth",
    "SessionLookup",
    "SessionRecord",
    "SessionSecurityService",
    "SessionStore",
    "Severity",
    "SqlSessionStore",
]
