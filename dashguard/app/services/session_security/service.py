"""Session anomaly detection and session limit enforcement.

Detection is fail-open: if the session store, the geolocation lookup or
any single check fails, that dimension is reported as "no anomaly" and the
request proceeds. Enforcement is not: a revocation that could not be
written raises SessionEnforcementError so the caller can decide.
"""

from datetime import datetime
from itertools import combinations
from typing import Awaitable, Callable, Optional

from dashguard.app.core.logging import get_log_context, get_logger
from dashguard.app.db.models import utcnow
from dashguard.app.exceptions import AuthenticationError, SessionEnforcementError
from dashguard.app.services.audit import AuditEvent, AuditLog
from dashguard.app.services.geolocation import GeoLocation, GeolocationProvider, haversine_km
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
from dashguard.app.services.session_security.store import SessionStore

logger = get_logger(__name__)

AUDIT_RESOURCE = "auth"


class SessionSecurityService:
    """Evaluates login/session context against a user's known sessions."""

    def __init__(
        self,
        store: SessionStore,
        audit: AuditLog,
        geolocator: Optional[GeolocationProvider] = None,
        policy: Optional[AnomalyPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the service.

        Args:
            store: Session store holding each user's active sessions
            audit: Audit log receiving security events
            geolocator: Optional IP geolocation; location checks are skipped
                without one
            policy: Classification thresholds (defaults from settings)
            clock: Source of the current aware datetime
        """
        self._store = store
        self._audit = audit
        self._geolocator = geolocator
        self._policy = policy or AnomalyPolicy.from_settings()
        self._clock = clock

    @property
    def policy(self) -> AnomalyPolicy:
        return self._policy

    async def get_active_sessions(self, user_id: str) -> list[SessionRecord]:
        return await self._store.get_active_sessions(user_id)

    # Detection

    async def detect_session_anomalies(
        self,
        user_id: str,
        context: ConnectionContext,
    ) -> list[SessionAnomaly]:
        """Compare a connection against the user's active sessions.

        Each dimension yields at most one anomaly. An empty list means no
        anomaly was found, not an error.
        """
        try:
            sessions = await self._store.get_active_sessions(user_id)
        except Exception:
            logger.exception(
                "Session store unavailable, skipping anomaly detection",
                extra=get_log_context(user_id=user_id, client_ip=context.ip_address),
            )
            return []

        anomalies: list[SessionAnomaly] = []
        checks = (
            ("fingerprint_mismatch", lambda: self._check_fingerprint_mismatch(context, sessions)),
            ("new_device", lambda: self._check_new_device(context, sessions)),
            ("location", lambda: self._check_locations(context, sessions)),
            ("concurrent_sessions", lambda: self._check_concurrent_sessions(sessions)),
        )
        for name, check in checks:
            found = await self._run_check(name, user_id, check)
            anomalies.extend(found)
        return anomalies

    async def _run_check(
        self,
        name: str,
        user_id: str,
        check: Callable[[], Awaitable[list[SessionAnomaly]]],
    ) -> list[SessionAnomaly]:
        try:
            return await check()
        except Exception:
            logger.exception(
                f"Anomaly check {name} failed; treating as no anomaly",
                extra=get_log_context(user_id=user_id),
            )
            return []

    async def _check_fingerprint_mismatch(
        self,
        context: ConnectionContext,
        sessions: list[SessionRecord],
    ) -> list[SessionAnomaly]:
        if context.session_id is None:
            return []
        current = next((s for s in sessions if s.id == context.session_id), None)
        if current is None or not current.fingerprint or current.fingerprint == context.fingerprint:
            return []
        return [SessionAnomaly(
            type=AnomalyType.FINGERPRINT_MISMATCH,
            severity=Severity.HIGH,
            description="Session is being used from a different device than it was created on",
            metadata={"session_id": current.id, "user_agent": context.user_agent},
        )]

    async def _check_new_device(
        self,
        context: ConnectionContext,
        sessions: list[SessionRecord],
    ) -> list[SessionAnomaly]:
        if any(s.fingerprint == context.fingerprint for s in sessions):
            return []
        return [SessionAnomaly(
            type=AnomalyType.NEW_DEVICE,
            severity=Severity.MEDIUM,
            description="Login from previously unseen device",
            metadata={"user_agent": context.user_agent, "fingerprint": context.fingerprint},
        )]

    async def _check_concurrent_sessions(self, sessions: list[SessionRecord]) -> list[SessionAnomaly]:
        limit = self._policy.concurrent_session_limit
        if len(sessions) <= limit:
            return []
        return [SessionAnomaly(
            type=AnomalyType.CONCURRENT_SESSION_LIMIT,
            severity=Severity.MEDIUM,
            description=f"{len(sessions)} active sessions exceed the limit of {limit}",
            metadata={
                "session_count": len(sessions),
                "limit": limit,
                "locations": sorted({s.ip_address for s in sessions if s.ip_address}),
            },
        )]

    async def _check_locations(
        self,
        context: ConnectionContext,
        sessions: list[SessionRecord],
    ) -> list[SessionAnomaly]:
        """Evaluate new_location and impossible_travel together.

        Both need the same lookups; without a geolocator, or when the
        current address cannot be located, neither is evaluated.
        """
        if self._geolocator is None:
            return []
        current = await self._geolocator.locate(context.ip_address)
        if current is None:
            return []

        located: list[tuple[SessionRecord, GeoLocation]] = []
        lookups: dict[str, Optional[GeoLocation]] = {context.ip_address: current}
        for session in sessions:
            if not session.ip_address:
                continue
            if session.ip_address not in lookups:
                lookups[session.ip_address] = await self._geolocator.locate(session.ip_address)
            location = lookups[session.ip_address]
            if location is not None:
                located.append((session, location))

        anomalies: list[SessionAnomaly] = []
        new_location = self._classify_new_location(context, current, sessions, located)
        if new_location is not None:
            anomalies.append(new_location)
        travel = self._classify_impossible_travel(context, current, located)
        if travel is not None:
            anomalies.append(travel)
        return anomalies

    def _classify_new_location(
        self,
        context: ConnectionContext,
        current: GeoLocation,
        sessions: list[SessionRecord],
        located: list[tuple[SessionRecord, GeoLocation]],
    ) -> Optional[SessionAnomaly]:
        if any(s.ip_address == context.ip_address for s in sessions):
            return None
        if not located:
            # Nothing to compare against
            return None

        nearest = min(haversine_km(current, location) for _, location in located)
        if nearest < self._policy.new_location_min_distance_km:
            return None

        severity = (
            Severity.MEDIUM if nearest >= self._policy.new_location_medium_distance_km
            else Severity.LOW
        )
        return SessionAnomaly(
            type=AnomalyType.NEW_LOCATION,
            severity=severity,
            description=f"Login from new location {current.label()}",
            metadata={
                "ip_address": context.ip_address,
                "location": current.label(),
                "nearest_known_km": round(nearest, 1),
            },
        )

    def _classify_impossible_travel(
        self,
        context: ConnectionContext,
        current: GeoLocation,
        located: list[tuple[SessionRecord, GeoLocation]],
    ) -> Optional[SessionAnomaly]:
        """Find the fastest implied trip between any two sightings.

        The current connection counts as a sighting at "now".
        """
        sightings = [(s.ip_address, s.last_seen, location) for s, location in located]
        sightings.append((context.ip_address, self._clock(), current))

        worst: Optional[tuple[float, float, float, tuple, tuple]] = None
        for a, b in combinations(sightings, 2):
            distance = haversine_km(a[2], b[2])
            if distance < self._policy.impossible_travel_min_distance_km:
                continue
            hours = abs((a[1] - b[1]).total_seconds()) / 3600
            speed = distance / hours if hours > 0 else float("inf")
            if speed <= self._policy.impossible_travel_speed_kmh:
                continue
            if worst is None or speed > worst[0]:
                worst = (speed, distance, hours, a, b)

        if worst is None:
            return None
        speed, distance, hours, a, b = worst
        return SessionAnomaly(
            type=AnomalyType.IMPOSSIBLE_TRAVEL,
            severity=Severity.HIGH,
            description="Logins from locations too far apart for the time between them",
            metadata={
                "previous_ip": a[0],
                "current_ip": b[0],
                "distance_km": round(distance, 1),
                "hours_between": round(hours, 2),
                "speed_kmh": None if speed == float("inf") else round(speed, 1),
            },
        )

    # Handling

    async def handle_session_anomalies(
        self,
        user_id: str,
        anomalies: list[SessionAnomaly],
        context: Optional[ConnectionContext] = None,
    ) -> AnomalyHandlingResult:
        """Write one audit event per anomaly and escalate high severity ones.

        Re-authentication is not performed here; ``requires_reauthentication``
        tells the calling request handler to challenge the user.
        """
        high = [a for a in anomalies if a.severity is Severity.HIGH]
        ip_address = context.ip_address if context else None
        user_agent = context.user_agent if context else None

        if high:
            logger.warning(
                f"High severity session anomaly: {', '.join(a.type.value for a in high)}",
                extra=get_log_context(user_id=user_id, client_ip=ip_address),
            )
            await self._record(AuditEvent(
                action="HIGH_SEVERITY_SESSION_ANOMALY",
                resource=AUDIT_RESOURCE,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={
                    "anomalies": [a.to_dict(include_metadata=True) for a in high],
                    "timestamp": self._clock().isoformat(),
                },
            ))

        recorded = 0
        for anomaly in anomalies:
            written = await self._record(AuditEvent(
                action=f"SESSION_ANOMALY_{anomaly.type.value.upper()}",
                resource=AUDIT_RESOURCE,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={
                    "severity": anomaly.severity.value,
                    "description": anomaly.description,
                    **anomaly.metadata,
                },
            ))
            recorded += int(written)

        return AnomalyHandlingResult(
            requires_reauthentication=bool(high),
            recorded=recorded,
            anomalies=list(anomalies),
        )

    async def _record(self, event: AuditEvent) -> bool:
        try:
            await self._audit.record(event)
        except Exception:
            logger.exception(
                f"Failed to record audit event {event.action}",
                extra=get_log_context(user_id=event.user_id),
            )
            return False
        return True

    # Enforcement

    async def enforce_session_limits(
        self,
        user_id: str,
        keep_session_id: Optional[str] = None,
    ) -> list[str]:
        """Revoke the oldest sessions beyond the concurrent session limit.

        Keeps the ``limit`` most recently seen sessions. ``keep_session_id``
        (the caller's own session) is always kept and counts towards the
        limit. Calling it again when already compliant is a no-op.

        Returns:
            IDs of the revoked sessions, oldest first

        Raises:
            SessionEnforcementError: If sessions could not be read or revoked
        """
        limit = self._policy.concurrent_session_limit
        try:
            sessions = await self._store.get_active_sessions(user_id)
        except Exception as e:
            raise SessionEnforcementError(user_id, "Failed to load active sessions") from e

        if len(sessions) <= limit:
            return []

        newest_first = sorted(sessions, key=lambda s: (s.last_seen, s.id), reverse=True)
        if keep_session_id is not None:
            newest_first.sort(key=lambda s: s.id != keep_session_id)
        to_revoke = list(reversed(newest_first[limit:]))

        for session in to_revoke:
            await self.revoke_session(user_id, session.id)

        revoked = [s.id for s in to_revoke]
        logger.info(
            f"Session limit enforced: revoked {len(revoked)} session(s)",
            extra=get_log_context(user_id=user_id),
        )
        await self._record(AuditEvent(
            action="SESSION_LIMIT_ENFORCED",
            resource=AUDIT_RESOURCE,
            user_id=user_id,
            details={
                "limit": limit,
                "revoked": len(revoked),
                "session_ids": revoked,
                "timestamp": self._clock().isoformat(),
            },
        ))
        return revoked

    async def revoke_session(
        self,
        user_id: str,
        session_id: str,
        revoked_by: Optional[str] = None,
    ) -> bool:
        """Revoke one session; False when it was already gone."""
        try:
            revoked = await self._store.revoke_session(user_id, session_id)
        except Exception as e:
            raise SessionEnforcementError(user_id, f"Failed to revoke session {session_id}") from e

        if revoked:
            await self._record(AuditEvent(
                action="SESSION_REVOKED",
                resource=AUDIT_RESOURCE,
                user_id=revoked_by or user_id,
                resource_id=session_id,
                details={
                    "target_user_id": user_id,
                    "session_id": session_id,
                    "timestamp": self._clock().isoformat(),
                },
            ))
        return revoked

    async def revoke_all_sessions(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        """Log the user out everywhere, optionally keeping one session."""
        try:
            count = await self._store.revoke_all_sessions(user_id, except_session_id)
        except Exception as e:
            raise SessionEnforcementError(user_id, "Failed to revoke sessions") from e

        if count:
            await self._record(AuditEvent(
                action="ALL_SESSIONS_REVOKED",
                resource=AUDIT_RESOURCE,
                user_id=user_id,
                details={
                    "session_count": count,
                    "except_session_id": except_session_id,
                    "timestamp": self._clock().isoformat(),
                },
            ))
        return count

    async def touch_session(self, user_id: str, session_id: str, ip_address: Optional[str]) -> None:
        """Record activity so the idle timeout follows real use.

        A failed write is logged; activity tracking never fails a request.
        """
        try:
            await self._store.touch_session(session_id, ip_address, self._clock())
        except Exception:
            logger.exception(
                "Failed to record session activity",
                extra=get_log_context(user_id=user_id, client_ip=ip_address),
            )

    async def track_session(self, user_id: str, session_id: str, context: ConnectionContext) -> None:
        """Store device details on a session and audit its creation."""
        try:
            tracked = await self._store.track_session(session_id, context)
        except Exception as e:
            raise SessionEnforcementError(user_id, f"Failed to track session {session_id}") from e
        if not tracked:
            return
        await self._record(AuditEvent(
            action="SESSION_CREATED",
            resource=AUDIT_RESOURCE,
            user_id=user_id,
            resource_id=session_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={
                "fingerprint": context.fingerprint,
                "timestamp": self._clock().isoformat(),
            },
        ))

    # Health

    def evaluate_health(self, lookup: Optional[SessionLookup]) -> SessionHealth:
        if lookup is None:
            return SessionHealth(healthy=False, reason="Session not found")

        now = self._clock()
        record = lookup.record
        if record.expires is not None and record.expires < now:
            return SessionHealth(healthy=False, reason="Session expired")
        if (now - record.last_seen).total_seconds() > self._policy.session_idle_timeout_seconds:
            return SessionHealth(healthy=False, reason="Session idle timeout")
        if not lookup.user_is_active:
            return SessionHealth(healthy=False, reason="User account deactivated")
        if lookup.user_locked_until is not None and lookup.user_locked_until > now:
            return SessionHealth(healthy=False, reason="User account locked")
        return SessionHealth(healthy=True)

    async def check_session_health(self, session_token: str) -> SessionHealth:
        lookup = await self._store.get_session_by_token(session_token)
        return self.evaluate_health(lookup)

    async def authenticate(self, session_token: str) -> SessionLookup:
        """Resolve a session token to a healthy session.

        Raises:
            AuthenticationError: If the session is unknown or unhealthy
        """
        lookup = await self._store.get_session_by_token(session_token)
        health = self.evaluate_health(lookup)
        if not health.healthy or lookup is None:
            raise AuthenticationError(health.reason or "Authentication required")
        return lookup
