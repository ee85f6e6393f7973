"""Session store: the source of truth for a user's active sessions."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dashguard.app.db.crud import (
    delete_session,
    delete_sessions_except,
    get_session_with_user,
    list_active_sessions,
    touch_session,
    update_session_device,
)
from dashguard.app.db.models import UserSession, ensure_aware, utcnow
from dashguard.app.services.session_security.models import (
    ConnectionContext,
    SessionLookup,
    SessionRecord,
)


class SessionStore(ABC):
    """Abstract base class for session stores."""

    @abstractmethod
    async def get_active_sessions(self, user_id: str) -> list[SessionRecord]:
        """Return the user's unexpired sessions."""
        pass

    @abstractmethod
    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        """Revoke one session.

        Returns:
            False when the session was already gone (revocation is idempotent)
        """
        pass

    @abstractmethod
    async def revoke_all_sessions(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        """Revoke every session of a user except one; return how many went."""
        pass

    @abstractmethod
    async def track_session(self, session_id: str, context: ConnectionContext) -> bool:
        """Attach device details to a session and mark it as seen now."""
        pass

    @abstractmethod
    async def touch_session(self, session_id: str, ip_address: Optional[str], seen_at: datetime) -> bool:
        """Mark a session as used at ``seen_at`` from ``ip_address``."""
        pass

    @abstractmethod
    async def get_session_by_token(self, session_token: str) -> Optional[SessionLookup]:
        pass


def to_session_record(row: UserSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        fingerprint=row.fingerprint,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        last_seen=ensure_aware(row.last_seen),
        created_at=ensure_aware(row.created_at) if row.created_at else None,
        expires=ensure_aware(row.expires) if row.expires else None,
    )


class SqlSessionStore(SessionStore):
    """Session store backed by the user_sessions table.

    Database errors propagate; callers decide whether a failed read
    degrades detection or a failed write is surfaced.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_maker = session_maker
        self._clock = clock

    async def get_active_sessions(self, user_id: str) -> list[SessionRecord]:
        async with self._session_maker() as session:
            rows = await list_active_sessions(session, user_id, now=self._clock())
            return [to_session_record(row) for row in rows]

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        async with self._session_maker() as session:
            deleted = await delete_session(session, user_id, session_id)
            await session.commit()
            return deleted > 0

    async def revoke_all_sessions(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        async with self._session_maker() as session:
            deleted = await delete_sessions_except(session, user_id, except_session_id)
            await session.commit()
            return deleted

    async def track_session(self, session_id: str, context: ConnectionContext) -> bool:
        async with self._session_maker() as session:
            updated = await update_session_device(
                session,
                session_id,
                fingerprint=context.fingerprint,
                user_agent=context.user_agent,
                ip_address=context.ip_address,
                last_seen=self._clock(),
            )
            await session.commit()
            return updated > 0

    async def touch_session(self, session_id: str, ip_address: Optional[str], seen_at: datetime) -> bool:
        async with self._session_maker() as session:
            updated = await touch_session(session, session_id, ip_address, seen_at)
            await session.commit()
            return updated > 0

    async def get_session_by_token(self, session_token: str) -> Optional[SessionLookup]:
        async with self._session_maker() as session:
            found = await get_session_with_user(session, session_token)
            if found is None:
                return None
            row, user = found
            return SessionLookup(
                record=to_session_record(row),
                user_is_active=user.is_active,
                user_locked_until=ensure_aware(user.locked_until) if user.locked_until else None,
            )
