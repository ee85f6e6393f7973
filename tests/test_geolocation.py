"""Tests for IP geolocation lookups."""

import httpx
import pytest

from dashguard.app.services.geolocation import (
    GeoLocation,
    HttpGeolocationProvider,
    haversine_km,
    is_public_address,
)

from tests.conftest import BOSTON, LONDON, NEW_YORK

URL = "http://geo.test/json/{ip}"


def make_provider(handler, **kwargs) -> tuple[HttpGeolocationProvider, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpGeolocationProvider(client, url_template=URL, timeout=1.0, **kwargs), client


class TestHaversine:
    def test_known_distances(self):
        assert haversine_km(NEW_YORK, LONDON) == pytest.approx(5570, rel=0.01)
        assert haversine_km(NEW_YORK, BOSTON) == pytest.approx(306, rel=0.02)

    def test_same_point_is_zero(self):
        assert haversine_km(LONDON, LONDON) == 0

    def test_symmetric(self):
        assert haversine_km(NEW_YORK, LONDON) == pytest.approx(haversine_km(LONDON, NEW_YORK))


def test_label():
    assert LONDON.label() == "London, United Kingdom"
    assert GeoLocation(1.0, 2.0).label() == "1.00,2.00"


@pytest.mark.parametrize(
    ("ip", "expected"),
    [
        ("8.8.8.8", True),
        ("10.0.0.1", False),
        ("127.0.0.1", False),
        ("192.168.1.20", False),
        ("not-an-ip", False),
        ("testclient", False),
    ],
)
def test_is_public_address(ip, expected):
    assert is_public_address(ip) is expected


class TestHttpGeolocationProvider:
    @pytest.mark.asyncio
    async def test_successful_lookup(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/json/8.8.8.8"
            return httpx.Response(200, json={
                "status": "success", "lat": 37.386, "lon": -122.0838,
                "country": "United States", "city": "Mountain View",
            })

        provider, client = make_provider(handler)
        location = await provider.locate("8.8.8.8")
        await client.aclose()

        assert location == GeoLocation(37.386, -122.0838, "United States", "Mountain View")

    @pytest.mark.asyncio
    async def test_failed_status_is_unlocated(self):
        provider, client = make_provider(
            lambda request: httpx.Response(200, json={"status": "fail", "message": "reserved range"})
        )
        location = await provider.locate("8.8.4.4")
        await client.aclose()

        assert location is None

    @pytest.mark.asyncio
    async def test_private_address_is_never_looked_up(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        provider, client = make_provider(handler)
        assert await provider.locate("192.168.1.5") is None
        await client.aclose()

        assert calls == []

    @pytest.mark.asyncio
    async def test_results_are_cached(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"lat": 51.5, "lon": -0.12})

        provider, client = make_provider(handler)
        first = await provider.locate("81.2.69.160")
        second = await provider.locate("81.2.69.160")
        await client.aclose()

        assert first == second
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_expired_cache_entry_is_refetched(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"lat": 51.5, "lon": -0.12})

        provider, client = make_provider(handler, cache_ttl=0)
        await provider.locate("81.2.69.160")
        await provider.locate("81.2.69.160")
        await client.aclose()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self):
        provider, client = make_provider(
            lambda request: httpx.Response(200, json={"lat": 1.0, "lon": 1.0}), max_entries=2
        )
        for ip in ("8.8.8.8", "8.8.4.4", "1.1.1.1"):
            await provider.locate(ip)
        await client.aclose()

        assert list(provider._cache) == ["8.8.4.4", "1.1.1.1"]

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        provider, client = make_provider(lambda request: httpx.Response(503))

        with pytest.raises(httpx.HTTPStatusError):
            await provider.locate("8.8.8.8")
        await client.aclose()
