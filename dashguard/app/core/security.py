import hashlib
from typing import Any


# Separator and sentinel used when folding headers into a fingerprint. A
# missing optional header hashes exactly like an empty one.
_FINGERPRINT_SEPARATOR = "|"
_MISSING_HEADER = ""
FINGERPRINT_LENGTH = 16


def create_device_fingerprint(
    user_agent: str | None,
    accept_language: str | None = None,
    accept_encoding: str | None = None,
) -> str:
    """Derive a stable device identifier from client headers.

    The fingerprint is a truncated SHA-256 over the user agent and the
    optional Accept-Language / Accept-Encoding headers. It is only used as
    an equality key for recognising a browser across logins; it is not a
    secret and cannot be reversed into the original headers.

    Args:
        user_agent: The User-Agent header value
        accept_language: Optional Accept-Language header value
        accept_encoding: Optional Accept-Encoding header value

    Returns:
        16 hex characters, identical for identical inputs
    """
    parts = [
        user_agent or _MISSING_HEADER,
        accept_language or _MISSING_HEADER,
        accept_encoding or _MISSING_HEADER,
    ]
    data = _FINGERPRINT_SEPARATOR.join(parts)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def hash_identifier(value: str, length: int = 32) -> str:
    """Hash a client identifier (IP address, user id) for use in keys.

    32 hex chars (128 bits) keeps collisions negligible while never storing
    the raw value in memory or in Redis.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def get_client_ip(request: Any, trust_forwarded_for: bool = True) -> str:
    """Resolve the client address of a request.

    Uses the first X-Forwarded-For hop, then X-Real-IP, when the service
    sits behind a trusted proxy; otherwise the socket peer.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else "unknown"
