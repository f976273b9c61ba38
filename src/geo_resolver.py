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
IP geolocation with an ordered cascade of public lookup providers.

Providers are tried strictly in order and the first success wins. Every
provider failure (network error, bad status, malformed body) is logged and
swallowed; when all providers fail the result is country "Unknown".
Local and private-LAN addresses never leave the process.

Nothing is cached here. The roster only re-resolves players whose country
is still unresolved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
import structlog

logger = structlog.get_logger()

UNKNOWN_COUNTRY = "Unknown"
LOCAL_COUNTRY = "Local"


@dataclass(frozen=True, slots=True)
class GeoInfo:
    """Resolved location for one address."""
    country: str
    country_code: str = ""
    city: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.country != UNKNOWN_COUNTRY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country": self.country,
            "country_code": self.country_code,
            "city": self.city,
        }


UNKNOWN_GEO = GeoInfo(country=UNKNOWN_COUNTRY, country_code="")
LOCAL_GEO = GeoInfo(country=LOCAL_COUNTRY, country_code="")


def strip_port(address: str) -> str:
    """'1.2.3.4:28015' -> '1.2.3.4'."""
    return address.split(":")[0] if address else ""


def is_local_address(ip: str) -> bool:
    """Loopback, 'localhost' and 192.168.x.x are never looked up."""
    return not ip or ip == "127.0.0.1" or ip == "localhost" or ip.startswith("192.168.")


class GeoProvider:
    """
    One external lookup service.

    Subclasses set ``name`` and ``url_template`` and implement
    ``parse`` to turn the JSON body into a GeoInfo, returning None when the
    body reports failure.
    """

    name: str = "provider"
    url_template: str = ""

    def url_for(self, ip: str) -> str:
        return self.url_template.format(ip=ip)

    def parse(self, data: Dict[str, Any]) -> Optional[GeoInfo]:
        raise NotImplementedError

    async def resolve(self, session: aiohttp.ClientSession, ip: str) -> Optional[GeoInfo]:
        """
        Query the provider.

        Returns:
            GeoInfo on success, None if the provider answered without a result.

        Raises:
            aiohttp.ClientError, ValueError: on transport or decoding failures.
        """
        async with session.get(self.url_for(ip)) as response:
            if response.status != 200:
                logger.debug(
                    "geo_provider_bad_status",
                    provider=self.name,
                    status=response.status,
                )
                return None
            data = await response.json(content_type=None)

        if not isinstance(data, dict):
            raise ValueError(f"{self.name}: expected JSON object, got {type(data).__name__}")

        return self.parse(data)


class IpWhoIsProvider(GeoProvider):
    """ipwho.is: HTTPS, fast. Reports ``success``."""

    name = "ipwho.is"
    url_template = "https://ipwho.is/{ip}"

    def parse(self, data: Dict[str, Any]) -> Optional[GeoInfo]:
        if not data.get("success") or not data.get("country"):
            return None
        return GeoInfo(
            country=data["country"],
            country_code=data.get("country_code") or "",
            city=data.get("city"),
        )


class IpApiProvider(GeoProvider):
    """ip-api.com: plain HTTP. Reports ``status == "success"``."""

    name = "ip-api.com"
    url_template = "http://ip-api.com/json/{ip}"

    def parse(self, data: Dict[str, Any]) -> Optional[GeoInfo]:
        if data.get("status") != "success" or not data.get("country"):
            return None
        return GeoInfo(
            country=data["country"],
            country_code=data.get("countryCode") or "",
            city=data.get("city"),
        )


class IpApiCoProvider(GeoProvider):
    """ipapi.co: backup. A present ``country_name`` means success."""

    name = "ipapi.co"
    url_template = "https://ipapi.co/{ip}/json/"

    def parse(self, data: Dict[str, Any]) -> Optional[GeoInfo]:
        country = data.get("country_name")
        if not country:
            return None
        return GeoInfo(
            country=country,
            country_code=data.get("country_code") or "",
            city=data.get("city"),
        )


def default_providers() -> List[GeoProvider]:
    return [IpWhoIsProvider(), IpApiProvider(), IpApiCoProvider()]


class GeoResolver:
    """Resolve IP addresses through an ordered list of providers."""

    def __init__(
        self,
        providers: Optional[Sequence[GeoProvider]] = None,
        timeout: float = 10.0,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            providers: Providers in priority order (defaults to ipwho.is,
                ip-api.com, ipapi.co).
            timeout: Total timeout per provider request in seconds.
        """
        self.providers: List[GeoProvider] = (
            list(providers) if providers is not None else default_providers()
        )
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Initialize HTTP session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            logger.debug("geo_resolver_session_opened", providers=[p.name for p in self.providers])

    async def close(self) -> None:
        """Close HTTP session."""
        if self.session is not None:
            await self.session.close()
            self.session = None
            logger.debug("geo_resolver_session_closed")

    async def resolve(self, address: str) -> GeoInfo:
        """
        Resolve an address (port is stripped) to a GeoInfo.

        Never raises for lookup failures.
        """
        ip = strip_port(address)

        if is_local_address(ip):
            return LOCAL_GEO

        if self.session is None:
            await self.connect()
        assert self.session is not None

        logger.debug("geo_lookup_started", ip=ip)

        for provider in self.providers:
            try:
                geo = await provider.resolve(self.session, ip)
            except Exception as e:
                logger.warning(
                    "geo_provider_failed",
                    provider=provider.name,
                    ip=ip,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if geo is not None:
                logger.info("geo_lookup_succeeded", provider=provider.name, ip=ip, country=geo.country)
                return geo

            logger.debug("geo_provider_no_result", provider=provider.name, ip=ip)

        logger.warning("geo_lookup_exhausted", ip=ip, providers=len(self.providers))
        return UNKNOWN_GEO
