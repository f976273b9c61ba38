# Copyright (c) 2025 Stephen Clau
#
# This file is part of Rust RCON Console.
#
# Rust RCON Console is dual-licensed:
#
# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms
#
# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com
#
# SPDX-License-Identifier: AGPL-3.0-only OR Commercial

"""
Tests for geo_resolver.py: provider parsing, cascade order and fallback,
local address short-circuit, session lifecycle.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from geo_resolver import (
    GeoInfo,
    GeoProvider,
    GeoResolver,
    IpApiCoProvider,
    IpApiProvider,
    IpWhoIsProvider,
    LOCAL_GEO,
    UNKNOWN_GEO,
    default_providers,
    is_local_address,
    strip_port,
)


# ============================================================================
# Helpers
# ============================================================================

def mock_http_session(status: int = 200, body: Any = None, error: Optional[Exception] = None) -> MagicMock:
    """aiohttp-style session whose get() returns an async context manager."""
    mock_response = AsyncMock()
    mock_response.__aenter__.return_value = mock_response
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=body)

    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = mock_response
    return session


class ScriptedProvider(GeoProvider):
    """Provider returning a fixed result or raising, recording calls."""

    def __init__(self, name: str, result: Optional[GeoInfo] = None, error: Optional[Exception] = None) -> None:
        self.name = name
        self.result = result
        self.error = error
        self.calls: List[str] = []

    async def resolve(self, session: Any, ip: str) -> Optional[GeoInfo]:
        self.calls.append(ip)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def resolver_factory():
    def _make(*providers: GeoProvider) -> GeoResolver:
        resolver = GeoResolver(providers=list(providers))
        resolver.session = MagicMock()
        return resolver
    return _make


# ============================================================================
# Address helpers
# ============================================================================

class TestAddressHelpers:
    def test_default_provider_order(self):
        assert [p.name for p in default_providers()] == ["ipwho.is", "ip-api.com", "ipapi.co"]

    def test_strip_port(self):
        assert strip_port("1.2.3.4:28015") == "1.2.3.4"
        assert strip_port("1.2.3.4") == "1.2.3.4"
        assert strip_port("") == ""

    @pytest.mark.parametrize("ip", ["127.0.0.1", "localhost", "192.168.1.5", "192.168.0.1", ""])
    def test_local_addresses(self, ip):
        assert is_local_address(ip) is True

    @pytest.mark.parametrize("ip", ["8.8.8.8", "10.0.0.1", "127.0.0.2", "193.168.1.1"])
    def test_public_addresses(self, ip):
        assert is_local_address(ip) is False


# ============================================================================
# Provider parsing
# ============================================================================

@pytest.mark.asyncio
class TestProviders:
    async def test_ipwhois_success(self):
        session = mock_http_session(body={"success": True, "country": "France", "country_code": "FR", "city": "Paris"})

        geo = await IpWhoIsProvider().resolve(session, "8.8.8.8")

        assert geo == GeoInfo("France", "FR", "Paris")
        session.get.assert_called_once_with("https://ipwho.is/8.8.8.8")

    async def test_ipwhois_failure_flag(self):
        session = mock_http_session(body={"success": False, "message": "reserved range"})

        assert await IpWhoIsProvider().resolve(session, "8.8.8.8") is None

    async def test_ipapi_status_success(self):
        session = mock_http_session(body={"status": "success", "country": "Japan", "countryCode": "JP", "city": "Tokyo"})

        geo = await IpApiProvider().resolve(session, "8.8.8.8")

        assert geo == GeoInfo("Japan", "JP", "Tokyo")
        session.get.assert_called_once_with("http://ip-api.com/json/8.8.8.8")

    async def test_ipapi_status_fail(self):
        session = mock_http_session(body={"status": "fail"})

        assert await IpApiProvider().resolve(session, "8.8.8.8") is None

    async def test_ipapico_country_name_means_success(self):
        session = mock_http_session(body={"country_name": "Brazil", "country_code": "BR", "city": "Recife"})

        geo = await IpApiCoProvider().resolve(session, "8.8.8.8")

        assert geo == GeoInfo("Brazil", "BR", "Recife")
        session.get.assert_called_once_with("https://ipapi.co/8.8.8.8/json/")

    async def test_ipapico_without_country_name(self):
        session = mock_http_session(body={"error": True, "reason": "RateLimited"})

        assert await IpApiCoProvider().resolve(session, "8.8.8.8") is None

    @pytest.mark.parametrize("provider,body", [
        (IpWhoIsProvider(), {"success": True, "country": "", "country_code": ""}),
        (IpWhoIsProvider(), {"success": True}),
        (IpApiProvider(), {"status": "success", "country": None}),
    ])
    async def test_success_without_country_is_no_result(self, provider, body):
        session = mock_http_session(body=body)

        assert await provider.resolve(session, "8.8.8.8") is None

    async def test_non_200_status_is_no_result(self):
        session = mock_http_session(status=429, body={"success": True, "country": "X"})

        assert await IpWhoIsProvider().resolve(session, "8.8.8.8") is None

    async def test_non_object_body_raises(self):
        session = mock_http_session(body=["not", "an", "object"])

        with pytest.raises(ValueError):
            await IpWhoIsProvider().resolve(session, "8.8.8.8")


# ============================================================================
# Cascade
# ============================================================================

@pytest.mark.asyncio
class TestCascade:
    async def test_first_success_wins(self, resolver_factory):
        a = ScriptedProvider("a", GeoInfo("France", "FR"))
        b = ScriptedProvider("b", GeoInfo("Spain", "ES"))
        resolver = resolver_factory(a, b)

        assert (await resolver.resolve("8.8.8.8:1234")).country == "France"
        assert a.calls == ["8.8.8.8"]
        assert b.calls == []

    async def test_falls_back_in_order(self, resolver_factory):
        a = ScriptedProvider("a", error=aiohttp.ClientConnectionError("refused"))
        b = ScriptedProvider("b", result=None)
        c = ScriptedProvider("c", GeoInfo("Chile", "CL", "Santiago"))
        resolver = resolver_factory(a, b, c)

        geo = await resolver.resolve("8.8.8.8")

        assert geo == GeoInfo("Chile", "CL", "Santiago")
        assert (a.calls, b.calls, c.calls) == (["8.8.8.8"], ["8.8.8.8"], ["8.8.8.8"])

    async def test_empty_country_moves_on_to_next_provider(self, resolver_factory):
        bodies = {
            "https://ipwho.is/8.8.8.8": {"success": True, "country": ""},
            "http://ip-api.com/json/8.8.8.8": {"status": "success", "country": "Germany", "countryCode": "DE"},
        }
        resolver = resolver_factory(IpWhoIsProvider(), IpApiProvider(), IpApiCoProvider())
        resolver.session.get.side_effect = lambda url: mock_http_session(body=bodies[url]).get(url)

        geo = await resolver.resolve("8.8.8.8")

        assert geo == GeoInfo("Germany", "DE", None)
        assert [c.args[0] for c in resolver.session.get.call_args_list] == list(bodies)

    async def test_all_failing_returns_unknown(self, resolver_factory):
        resolver = resolver_factory(
            ScriptedProvider("a", error=ValueError("bad json")),
            ScriptedProvider("b", error=TimeoutError()),
            ScriptedProvider("c", result=None),
        )

        geo = await resolver.resolve("8.8.8.8")

        assert geo == UNKNOWN_GEO
        assert geo.country == "Unknown"
        assert geo.country_code == ""
        assert geo.is_resolved is False

    @pytest.mark.parametrize("address", ["192.168.1.5", "192.168.1.5:28015", "127.0.0.1", "localhost"])
    async def test_local_addresses_never_hit_providers(self, resolver_factory, address):
        for outcome in (GeoInfo("France", "FR"), None):
            provider = ScriptedProvider("a", outcome)
            resolver = resolver_factory(provider)

            assert await resolver.resolve(address) == LOCAL_GEO
            assert provider.calls == []

    async def test_no_caching_between_calls(self, resolver_factory):
        provider = ScriptedProvider("a", GeoInfo("France", "FR"))
        resolver = resolver_factory(provider)

        await resolver.resolve("8.8.8.8")
        await resolver.resolve("8.8.8.8")

        assert provider.calls == ["8.8.8.8", "8.8.8.8"]

    async def test_session_lifecycle(self):
        resolver = GeoResolver(providers=[])

        await resolver.connect()
        assert isinstance(resolver.session, aiohttp.ClientSession)

        await resolver.close()
        assert resolver.session is None

    async def test_session_opened_lazily(self):
        resolver = GeoResolver(providers=[])

        assert await resolver.resolve("8.8.8.8") == UNKNOWN_GEO
        assert resolver.session is not None
        await resolver.close()
