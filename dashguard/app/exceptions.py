"""Custom exceptions for the DashGuard application."""


class DashGuardException(Exception):
    """Base class for DashGuard exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "DashGuard error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class RateLimitConfigError(DashGuardException, ValueError):
    """Raised for an invalid rate limit configuration.

    A misconfigured limiter is a programming error: it fails at the call
    site instead of silently producing nonsensical quotas.
    """
    status_code = 500
    error_code = "rate_limit_misconfigured"


class RateLimitExceededError(DashGuardException):
    """Raised by endpoint level limiters when the quota is exhausted.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(
        self,
        retry_after: int | None = None,
        limit: int | None = None,
        message: str = "Too many requests. Please try again later.",
    ):
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(message)

    def to_response(self) -> dict:
        body = super().to_response()
        body["retry_after"] = self.retry_after
        return body


class AuthenticationError(DashGuardException):
    """Raised when the session token is missing, unknown or expired.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    error_code = "authentication_required"

    def __init__(self, detail: str = "Authentication required"):
        self.detail = detail
        super().__init__(detail)


class ReauthenticationRequired(DashGuardException):
    """Raised when a high severity session anomaly demands re-verification.

    Maps to HTTP 403 Forbidden. This is a challenge, not a hard failure:
    the client is expected to verify its identity and retry.
    """
    status_code = 403
    error_code = "reauthentication_required"

    def __init__(self, anomalies: list | None = None, message: str = "Identity verification required"):
        self.anomalies = anomalies or []
        super().__init__(message)

    def to_response(self) -> dict:
        return {
            "anomalies": [a.to_dict() for a in self.anomalies],
            "requires_reauthentication": True,
            "action": "verify_identity",
        }


class SessionEnforcementError(DashGuardException):
    """Raised when a requested session revocation could not be written.

    Maps to HTTP 503 so the request handler can choose to fail open or closed.
    """
    status_code = 503
    error_code = "session_enforcement_failed"

    def __init__(self, user_id: str, message: str = "Failed to enforce session policy"):
        self.user_id = user_id
        super().__init__(message)


class CounterStoreUnavailable(DashGuardException):
    """Raised by a shared counter store when it cannot be reached."""
    status_code = 503
    error_code = "counter_store_unavailable"
