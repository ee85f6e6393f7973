"""Session CRUD operations."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dashguard.app.db.models import User, UserSession, utcnow


async def list_active_sessions(
    session: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> list[UserSession]:
    """Return unexpired sessions for a user, most recently seen first."""
    result = await session.execute(
        select(UserSession)
        .where(UserSession.user_id == user_id, UserSession.expires >= (now or utcnow()))
        .order_by(UserSession.last_seen.desc(), UserSession.id)
    )
    return list(result.scalars().all())


async def get_session_with_user(
    session: AsyncSession,
    session_token: str,
) -> tuple[UserSession, User] | None:
    result = await session.execute(
        select(UserSession, User)
        .join(User, User.id == UserSession.user_id)
        .where(UserSession.session_token == session_token)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def create_session(
    session: AsyncSession,
    session_id: str,
    session_token: str,
    user_id: str,
    expires: datetime,
    fingerprint: str | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
    last_seen: datetime | None = None,
) -> UserSession:
    now = utcnow()
    record = UserSession(
        id=session_id,
        session_token=session_token,
        user_id=user_id,
        fingerprint=fingerprint,
        user_agent=user_agent,
        ip_address=ip_address,
        created_at=now,
        last_seen=last_seen or now,
        expires=expires,
    )
    session.add(record)
    await session.flush()
    return record


async def update_session_device(
    session: AsyncSession,
    session_id: str,
    fingerprint: str | None,
    user_agent: str | None,
    ip_address: str | None,
    last_seen: datetime | None = None,
) -> int:
    """Attach device metadata to a session and bump last_seen.

    Returns:
        Number of rows updated (0 when the session does not exist)
    """
    result = await session.execute(
        update(UserSession)
        .where(UserSession.id == session_id)
        .values(
            fingerprint=fingerprint,
            user_agent=user_agent,
            ip_address=ip_address,
            last_seen=last_seen or utcnow(),
        )
    )
    return result.rowcount or 0


async def touch_session(
    session: AsyncSession,
    session_id: str,
    ip_address: str | None,
    seen_at: datetime,
) -> int:
    """Record activity on a session without touching its device details."""
    values: dict = {"last_seen": seen_at}
    if ip_address:
        values["ip_address"] = ip_address
    result = await session.execute(
        update(UserSession).where(UserSession.id == session_id).values(**values)
    )
    return result.rowcount or 0


async def delete_session(session: AsyncSession, user_id: str, session_id: str) -> int:
    """Delete one session of a user. Deleting a missing session is a no-op."""
    result = await session.execute(
        delete(UserSession).where(UserSession.id == session_id, UserSession.user_id == user_id)
    )
    return result.rowcount or 0


async def delete_sessions_except(
    session: AsyncSession,
    user_id: str,
    except_session_id: str | None = None,
) -> int:
    stmt = delete(UserSession).where(UserSession.user_id == user_id)
    if except_session_id is not None:
        stmt = stmt.where(UserSession.id != except_session_id)
    result = await session.execute(stmt)
    return result.rowcount or 0
