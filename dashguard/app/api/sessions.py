"""Session management API: anomaly checks, listing and revocation."""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel

from dashguard.app.core.config import settings
from dashguard.app.core.logging import get_log_context, get_logger
from dashguard.app.core.security import get_client_ip
from dashguard.app.exceptions import AuthenticationError, ReauthenticationRequired
from dashguard.app.services.session_security import (
    ConnectionContext,
    SessionLookup,
    SessionSecurityService,
    Severity,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth/sessions", tags=["sessions"])


class AnomalyResponse(BaseModel):
    type: str
    severity: str
    description: str


class AnomalyCheckResponse(BaseModel):
    """Result of a session anomaly check that did not require re-verification."""

    anomalies: list[AnomalyResponse]
    requires_reauthentication: bool
    session_health: str


class SessionResponse(BaseModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    last_seen: str
    created_at: Optional[str] = None
    current: bool


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    total: int
    limit: int


class RevokeResponse(BaseModel):
    success: bool
    revoked_count: int
    message: str


def get_session_service(request: Request) -> SessionSecurityService:
    return request.app.state.session_service


def _bearer_token(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")
    token = auth[7:].strip()
    # Reject absurd tokens before they reach the database
    if not token or len(token) > 512:
        raise AuthenticationError("Invalid bearer token")
    return token


async def get_current_session(
    request: Request,
    background_tasks: BackgroundTasks,
    service: SessionSecurityService = Depends(get_session_service),
) -> SessionLookup:
    """Authenticate the request by its session token.

    The session's activity is recorded after the response, so handlers
    still see the state it had before this request.

    Raises:
        AuthenticationError: If the token is missing, unknown or unhealthy
    """
    lookup = await service.authenticate(_bearer_token(request))
    request.state.user_id = lookup.record.user_id
    request.state.session_id = lookup.record.id
    background_tasks.add_task(
        service.touch_session,
        lookup.record.user_id,
        lookup.record.id,
        get_client_ip(request, settings.rate_limit_trust_forwarded_for),
    )
    return lookup


@router.post("/check-anomalies", response_model=AnomalyCheckResponse)
async def check_anomalies(
    request: Request,
    response: Response,
    current: SessionLookup = Depends(get_current_session),
    service: SessionSecurityService = Depends(get_session_service),
) -> AnomalyCheckResponse:
    """Check the calling connection for session anomalies.

    Called at login and periodically by the dashboard. High severity
    anomalies are answered with 403 and a request to verify identity.
    Lower severity ones are recorded, and the session limit is enforced.
    """
    user_id = current.record.user_id
    context = ConnectionContext.from_request(request, user_id=user_id, session_id=current.record.id)

    anomalies = await service.detect_session_anomalies(user_id, context)

    if any(a.severity is Severity.HIGH for a in anomalies):
        await service.handle_session_anomalies(user_id, anomalies, context)
        raise ReauthenticationRequired(anomalies)

    if anomalies:
        await service.handle_session_anomalies(user_id, anomalies, context)

    # SessionEnforcementError propagates and is rendered as 503
    await service.enforce_session_limits(user_id, keep_session_id=current.record.id)

    health = await service.check_session_health(_bearer_token(request))
    response.headers["Cache-Control"] = "no-store"
    return AnomalyCheckResponse(
        anomalies=[AnomalyResponse(**a.to_dict()) for a in anomalies],
        requires_reauthentication=False,
        session_health="healthy" if health.healthy else (health.reason or "unhealthy"),
    )


@router.post("/track", status_code=status.HTTP_204_NO_CONTENT)
async def track_current_session(
    request: Request,
    current: SessionLookup = Depends(get_current_session),
    service: SessionSecurityService = Depends(get_session_service),
) -> Response:
    """Attach the caller's device details to its session."""
    user_id = current.record.user_id
    context = ConnectionContext.from_request(request, user_id=user_id, session_id=current.record.id)
    await service.track_session(user_id, current.record.id, context)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    response: Response,
    current: SessionLookup = Depends(get_current_session),
    service: SessionSecurityService = Depends(get_session_service),
) -> SessionListResponse:
    """List the caller's active sessions, flagging the current one."""
    user_id = current.record.user_id
    try:
        sessions = await service.get_active_sessions(user_id)
    except Exception:
        logger.exception("Failed to list sessions", extra=get_log_context(user_id=user_id))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to retrieve sessions",
        )

    response.headers["Cache-Control"] = "private, max-age=0"
    return SessionListResponse(
        sessions=[
            SessionResponse(
                id=s.id,
                user_agent=s.user_agent,
                ip_address=s.ip_address,
                last_seen=s.last_seen.isoformat(),
                created_at=s.created_at.isoformat() if s.created_at else None,
                current=s.id == current.record.id,
            )
            for s in sessions
        ],
        total=len(sessions),
        limit=service.policy.concurrent_session_limit,
    )


@router.delete("/{session_id}", response_model=RevokeResponse)
async def revoke_session(
    session_id: str,
    response: Response,
    current: SessionLookup = Depends(get_current_session),
    service: SessionSecurityService = Depends(get_session_service),
) -> RevokeResponse:
    """Revoke one of the caller's other sessions."""
    if session_id == current.record.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot revoke current session",
        )

    user_id = current.record.user_id
    revoked = await service.revoke_session(user_id, session_id, revoked_by=user_id)
    if not revoked:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    response.headers["Cache-Control"] = "no-store"
    return RevokeResponse(success=True, revoked_count=1, message="Session revoked successfully")


@router.delete("", response_model=RevokeResponse)
async def revoke_other_sessions(
    response: Response,
    current: SessionLookup = Depends(get_current_session),
    service: SessionSecurityService = Depends(get_session_service),
) -> RevokeResponse:
    """Log out everywhere except the current session."""
    count = await service.revoke_all_sessions(current.record.user_id, except_session_id=current.record.id)
    response.headers["Cache-Control"] = "no-store"
    return RevokeResponse(
        success=True,
        revoked_count=count,
        message=f"Revoked {count} session(s)",
    )
