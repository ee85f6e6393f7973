"""Services package for DashGuard.

This package provides:
- Security audit trail and rate limit abuse detection
- IP geolocation for location based anomaly checks
- Session anomaly detection and session limit enforcement
"""
