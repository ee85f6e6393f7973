"""Tests for device fingerprinting and client address helpers."""

from types import SimpleNamespace

from dashguard.app.core.security import (
    FINGERPRINT_LENGTH,
    create_device_fingerprint,
    get_client_ip,
    hash_identifier,
)
from dashguard.app.services.session_security import ConnectionContext

UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) Safari/605.1.15"


class TestDeviceFingerprint:
    def test_same_headers_same_fingerprint(self):
        assert create_device_fingerprint(UA, "en-US", "gzip, br") == create_device_fingerprint(
            UA, "en-US", "gzip, br"
        )

    def test_format(self):
        fingerprint = create_device_fingerprint(UA, "en-US", "gzip")

        assert len(fingerprint) == FINGERPRINT_LENGTH == 16
        assert all(c in "0123456789abcdef" for c in fingerprint)

    def test_each_header_contributes(self):
        base = create_device_fingerprint(UA, "en-US", "gzip")

        assert create_device_fingerprint(UA + " x", "en-US", "gzip") != base
        assert create_device_fingerprint(UA, "de-DE", "gzip") != base
        assert create_device_fingerprint(UA, "en-US", "br") != base

    def test_missing_header_equals_empty(self):
        assert create_device_fingerprint(UA) == create_device_fingerprint(UA, "", "")
        assert create_device_fingerprint(None) == create_device_fingerprint("")

    def test_connection_context_computes_fingerprint(self):
        ctx = ConnectionContext(ip_address="203.0.113.1", user_agent=UA, accept_language="en-US")

        assert ctx.fingerprint == create_device_fingerprint(UA, "en-US", None)

    def test_connection_context_keeps_given_fingerprint(self):
        ctx = ConnectionContext(ip_address="203.0.113.1", user_agent=UA, fingerprint="abc")

        assert ctx.fingerprint == "abc"


class TestClientIp:
    @staticmethod
    def request(headers=None, host="10.1.1.1"):
        return SimpleNamespace(headers=headers or {}, client=SimpleNamespace(host=host))

    def test_first_forwarded_hop(self):
        assert get_client_ip(self.request({"X-Forwarded-For": " 198.51.100.4 , 10.0.0.1"})) == "198.51.100.4"

    def test_real_ip_fallback(self):
        assert get_client_ip(self.request({"X-Real-IP": "198.51.100.5"})) == "198.51.100.5"

    def test_untrusted_headers_are_ignored(self):
        request = self.request({"X-Forwarded-For": "198.51.100.4"})

        assert get_client_ip(request, trust_forwarded_for=False) == "10.1.1.1"

    def test_no_client(self):
        request = SimpleNamespace(headers={}, client=None)

        assert get_client_ip(request) == "unknown"


def test_hash_identifier_is_stable_and_opaque():
    hashed = hash_identifier("203.0.113.9")

    assert hashed == hash_identifier("203.0.113.9")
    assert len(hashed) == 32
    assert hash_identifier("203.0.113.9", length=8) == hashed[:8]
