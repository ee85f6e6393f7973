"""Shared fixtures: in-memory fakes for the session security collaborators
and a throwaway SQLite database for the SQL-backed stores."""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dashguard.app.db.async_session import create_session_maker
from dashguard.app.db.base import Base
from dashguard.app.db import models  # noqa: F401 - import to register models
from dashguard.app.services.audit import AuditEvent, AuditLog
from dashguard.app.services.geolocation import GeoLocation, GeolocationProvider
from dashguard.app.services.session_security import (
    ConnectionContext,
    SessionLookup,
    SessionRecord,
    SessionStore,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

# Coarse city coordinates used across the location tests
NEW_YORK = GeoLocation(40.7128, -74.0060, "United States", "New York")
BOSTON = GeoLocation(42.3601, -71.0589, "United States", "Boston")
LONDON = GeoLocation(51.5074, -0.1278, "United Kingdom", "London")
NEWARK = GeoLocation(40.7357, -74.1724, "United States", "Newark")


class FakeClock:
    """Epoch-seconds clock advanced by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSessionStore(SessionStore):
    def __init__(self, sessions: Optional[list[SessionRecord]] = None):
        self.sessions: dict[str, SessionRecord] = {s.id: s for s in sessions or []}
        self.tokens: dict[str, str] = {}
        self.revoked: list[str] = []
        self.tracked: list[tuple[str, ConnectionContext]] = []
        self.touched: list[str] = []
        self.fail_reads = False
        self.fail_writes = False
        self.user_is_active = True
        self.user_locked_until: Optional[datetime] = None

    async def get_active_sessions(self, user_id: str) -> list[SessionRecord]:
        if self.fail_reads:
            raise ConnectionError("session store down")
        return [s for s in self.sessions.values() if s.user_id == user_id]

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        if self.fail_writes:
            raise ConnectionError("session store down")
        record = self.sessions.get(session_id)
        if record is None or record.user_id != user_id:
            return False
        del self.sessions[session_id]
        self.revoked.append(session_id)
        return True

    async def revoke_all_sessions(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        if self.fail_writes:
            raise ConnectionError("session store down")
        doomed = [
            s.id for s in self.sessions.values()
            if s.user_id == user_id and s.id != except_session_id
        ]
        for session_id in doomed:
            del self.sessions[session_id]
        self.revoked.extend(doomed)
        return len(doomed)

    async def track_session(self, session_id: str, context: ConnectionContext) -> bool:
        if self.fail_writes:
            raise ConnectionError("session store down")
        record = self.sessions.get(session_id)
        if record is None:
            return False
        record.fingerprint = context.fingerprint
        record.user_agent = context.user_agent
        record.ip_address = context.ip_address
        self.tracked.append((session_id, context))
        return True

    async def touch_session(self, session_id: str, ip_address: Optional[str], seen_at: datetime) -> bool:
        if self.fail_writes:
            raise ConnectionError("session store down")
        record = self.sessions.get(session_id)
        if record is None:
            return False
        record.last_seen = seen_at
        if ip_address:
            record.ip_address = ip_address
        self.touched.append(session_id)
        return True

    async def get_session_by_token(self, session_token: str) -> Optional[SessionLookup]:
        session_id = self.tokens.get(session_token)
        if session_id is None or session_id not in self.sessions:
            return None
        return SessionLookup(
            record=self.sessions[session_id],
            user_is_active=self.user_is_active,
            user_locked_until=self.user_locked_until,
        )


class FakeAuditLog(AuditLog):
    def __init__(self):
        self.events: list[AuditEvent] = []
        self.fail = False

    async def record(self, event: AuditEvent) -> None:
        if self.fail:
            raise ConnectionError("audit store down")
        self.events.append(event)

    async def count_events(self, action, since, resource=None, user_id=None, ip_address=None) -> int:
        return sum(
            1 for e in self.events
            if e.action == action
            and (resource is None or e.resource == resource)
            and (
                (user_id is None and ip_address is None)
                or (user_id is not None and e.user_id == user_id)
                or (ip_address is not None and e.ip_address == ip_address)
            )
        )

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


class FakeGeolocator(GeolocationProvider):
    def __init__(self, locations: Optional[dict[str, GeoLocation]] = None, fail: bool = False):
        self.locations = locations or {}
        self.fail = fail
        self.calls: list[str] = []

    async def locate(self, ip: str) -> Optional[GeoLocation]:
        self.calls.append(ip)
        if self.fail:
            raise ConnectionError("geolocation service unreachable")
        return self.locations.get(ip)


def make_session(
    session_id: str,
    user_id: str = "user-1",
    fingerprint: Optional[str] = None,
    user_agent: str = "Mozilla/5.0",
    ip_address: Optional[str] = "203.0.113.10",
    last_seen: Optional[datetime] = None,
    expires: Optional[datetime] = None,
) -> SessionRecord:
    return SessionRecord(
        id=session_id,
        user_id=user_id,
        fingerprint=fingerprint,
        user_agent=user_agent,
        ip_address=ip_address,
        last_seen=last_seen or NOW - timedelta(minutes=5),
        created_at=NOW - timedelta(days=1),
        expires=expires or NOW + timedelta(days=1),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_store() -> FakeSessionStore:
    return FakeSessionStore()


@pytest.fixture
def audit_log() -> FakeAuditLog:
    return FakeAuditLog()


@pytest_asyncio.fixture
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session maker bound to a fresh SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dashguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_maker(engine)

    await engine.dispose()
