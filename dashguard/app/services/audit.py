"""Security audit trail.

The audit log is fire-and-forget from the caller's perspective: a failed
write is logged and swallowed so that recording an event never breaks the
request that produced it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dashguard.app.core.config import settings
from dashguard.app.core.logging import get_log_context, get_logger
from dashguard.app.db.crud import count_audit_logs, create_audit_log
from dashguard.app.db.models import utcnow

logger = get_logger(__name__)

RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


@dataclass
class AuditEvent:
    """A single security-relevant event."""
    action: str
    resource: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


class AuditLog(ABC):
    """Abstract base class for audit log sinks."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist an event. Implementations must not raise on write failure."""
        pass

    @abstractmethod
    async def count_events(
        self,
        action: str,
        since: datetime,
        resource: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        """Count events of one action since a point in time."""
        pass


class SqlAuditLog(AuditLog):
    """Audit log stored in the audit_logs table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def record(self, event: AuditEvent) -> None:
        try:
            async with self._session_maker() as session:
                await create_audit_log(
                    session,
                    action=event.action,
                    resource=event.resource,
                    user_id=event.user_id,
                    resource_id=event.resource_id,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    details=event.details,
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception(
                f"Failed to write audit event {event.action}",
                extra=get_log_context(user_id=event.user_id, client_ip=event.ip_address),
            )

    async def count_events(
        self,
        action: str,
        since: datetime,
        resource: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        async with self._session_maker() as session:
            return await count_audit_logs(
                session,
                action=action,
                since=since,
                resource=resource,
                user_id=user_id,
                ip_address=ip_address,
            )


async def log_rate_limit_violation(
    audit: AuditLog,
    endpoint: str,
    key: str,
    method: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> None:
    """Record a rejected request in the audit trail."""
    await audit.record(
        AuditEvent(
            action=RATE_LIMIT_EXCEEDED,
            resource=endpoint,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={
                "key": key,
                "method": method,
                "timestamp": utcnow().isoformat(),
            },
        )
    )


async def detect_abuse_pattern(
    audit: AuditLog,
    user_id: Optional[str],
    ip_address: Optional[str],
    endpoint: str,
    threshold: Optional[int] = None,
    window_seconds: Optional[int] = None,
) -> bool:
    """Check whether a client keeps hitting the rate limit on an endpoint.

    More than ``threshold`` violations within ``window_seconds`` counts as
    abuse. A failing audit store is treated as "not abusive".
    """
    threshold = threshold if threshold is not None else settings.abuse_violation_threshold
    window_seconds = window_seconds if window_seconds is not None else settings.abuse_window_seconds
    try:
        recent = await audit.count_events(
            RATE_LIMIT_EXCEEDED,
            since=utcnow() - timedelta(seconds=window_seconds),
            resource=endpoint,
            user_id=user_id,
            ip_address=ip_address,
        )
    except Exception:
        logger.exception(
            "Failed to detect abuse pattern",
            extra=get_log_context(user_id=user_id, client_ip=ip_address, path=endpoint),
        )
        return False
    return recent > threshold
