"""Session security data models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from dashguard.app.core.config import Settings, settings
from dashguard.app.core.security import create_device_fingerprint, get_client_ip


class AnomalyType(str, Enum):
    NEW_DEVICE = "new_device"
    NEW_LOCATION = "new_location"
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    CONCURRENT_SESSION_LIMIT = "concurrent_session_limit"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class SessionAnomaly:
    """One risk signal produced by a single evaluation."""
    type: AnomalyType
    severity: Severity
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_metadata: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
        }
        if include_metadata:
            data["metadata"] = self.metadata
        return data


@dataclass
class SessionRecord:
    """A known active session, as owned by the session store."""
    id: str
    user_id: str
    fingerprint: Optional[str]
    user_agent: Optional[str]
    ip_address: Optional[str]
    last_seen: datetime
    created_at: Optional[datetime] = None
    expires: Optional[datetime] = None


@dataclass
class SessionLookup:
    """A session resolved from its token, with the owning user's status."""
    record: SessionRecord
    user_is_active: bool = True
    user_locked_until: Optional[datetime] = None


@dataclass
class ConnectionContext:
    """Connection details of the request being evaluated."""
    ip_address: str
    user_agent: str
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    fingerprint: str = ""

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = create_device_fingerprint(
                self.user_agent, self.accept_language, self.accept_encoding
            )

    @classmethod
    def from_request(
        cls,
        request: Any,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        trust_forwarded_for: Optional[bool] = None,
    ) -> "ConnectionContext":
        trust = (
            trust_forwarded_for if trust_forwarded_for is not None
            else settings.rate_limit_trust_forwarded_for
        )
        return cls(
            ip_address=get_client_ip(request, trust),
            user_agent=request.headers.get("user-agent") or "unknown",
            accept_language=request.headers.get("accept-language"),
            accept_encoding=request.headers.get("accept-encoding"),
            user_id=user_id,
            session_id=session_id,
        )


@dataclass(frozen=True)
class AnomalyPolicy:
    """Thresholds for anomaly classification and session limits.

    Attributes:
        concurrent_session_limit: Active sessions allowed per user
        impossible_travel_speed_kmh: Implied travel speed above which two
            sightings of the same user are physically implausible
        impossible_travel_min_distance_km: Distances below this are treated
            as geolocation noise and never count as travel
        new_location_min_distance_km: Minimum distance from every known
            session location for a login to be a new location
        new_location_medium_distance_km: Distance at which a new location
            is raised from low to medium severity
        session_idle_timeout_seconds: Idle time after which a session is
            reported unhealthy
    """
    concurrent_session_limit: int = 3
    impossible_travel_speed_kmh: float = 500.0
    impossible_travel_min_distance_km: float = 100.0
    new_location_min_distance_km: float = 100.0
    new_location_medium_distance_km: float = 1000.0
    session_idle_timeout_seconds: int = 30 * 60

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "AnomalyPolicy":
        source = source or settings
        return cls(
            concurrent_session_limit=source.session_concurrent_limit,
            impossible_travel_speed_kmh=source.impossible_travel_speed_kmh,
            impossible_travel_min_distance_km=source.impossible_travel_min_distance_km,
            new_location_min_distance_km=source.new_location_min_distance_km,
            new_location_medium_distance_km=source.new_location_medium_distance_km,
            session_idle_timeout_seconds=source.session_idle_timeout_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AnomalyHandlingResult:
    requires_reauthentication: bool
    recorded: int
    anomalies: list[SessionAnomaly] = field(default_factory=list)


@dataclass
class SessionHealth:
    healthy: bool
    reason: Optional[str] = None
