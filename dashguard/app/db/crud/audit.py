"""Audit log CRUD operations."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dashguard.app.db.models import AuditLogEntry, utcnow


async def create_audit_log(
    session: AsyncSession,
    action: str,
    resource: str,
    user_id: str | None = None,
    resource_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(
        action=action,
        resource=resource,
        user_id=user_id,
        resource_id=resource_id,
        ip_address=ip_address,
        user_agent=user_agent,
        details=details or {},
        created_at=created_at or utcnow(),
    )
    session.add(entry)
    await session.flush()
    return entry


async def count_audit_logs(
    session: AsyncSession,
    action: str,
    since: datetime,
    resource: str | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
) -> int:
    """Count audit entries of one action since a point in time.

    When both user_id and ip_address are given an entry matches either of
    them, so a client rotating between anonymous and signed-in requests is
    still counted as one actor.
    """
    stmt = select(func.count(AuditLogEntry.id)).where(
        AuditLogEntry.action == action,
        AuditLogEntry.created_at >= since,
    )
    if resource is not None:
        stmt = stmt.where(AuditLogEntry.resource == resource)

    actors = []
    if user_id is not None:
        actors.append(AuditLogEntry.user_id == user_id)
    if ip_address is not None:
        actors.append(AuditLogEntry.ip_address == ip_address)
    if actors:
        stmt = stmt.where(or_(*actors))

    result = await session.execute(stmt)
    return int(result.scalar_one())


async def list_audit_logs(
    session: AsyncSession,
    user_id: str | None = None,
    action_prefix: str | None = None,
    limit: int = 100,
) -> list[AuditLogEntry]:
    stmt = select(AuditLogEntry).order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
    if user_id is not None:
        stmt = stmt.where(AuditLogEntry.user_id == user_id)
    if action_prefix is not None:
        stmt = stmt.where(AuditLogEntry.action.startswith(action_prefix))
    result = await session.execute(stmt.limit(limit))
    return list(result.scalars().all())
