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
Player roster and ban list.

The roster is rebuilt from each playerlist snapshot: every player in the
snapshot is online, every other known player is history. Players are never
removed. Geolocation is looked up sequentially, once for new players and
again only while a player's country is still unresolved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol

import structlog

try:
    from .geo_resolver import GeoInfo, LOCAL_COUNTRY, UNKNOWN_COUNTRY
    from .message_classifier import PlayerRecord
except ImportError:
    from geo_resolver import GeoInfo, LOCAL_COUNTRY, UNKNOWN_COUNTRY  # type: ignore
    from message_classifier import PlayerRecord  # type: ignore

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_playtime(seconds: int) -> str:
    """3725 -> '1h 2m'."""
    seconds = max(0, int(seconds))
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


class GeoLookup(Protocol):
    async def resolve(self, address: str) -> GeoInfo: ...


@dataclass
class Player:
    """One distinct Steam identity observed on the server."""

    steam_id: str
    name: str
    ip: str = ""
    country: str = ""
    country_code: str = ""
    city: Optional[str] = None
    ping: int = 0
    connected_seconds: int = 0
    is_online: bool = False
    last_seen: datetime = field(default_factory=_utcnow)

    @property
    def geo_unresolved(self) -> bool:
        return not self.country or self.country in (UNKNOWN_COUNTRY, LOCAL_COUNTRY)

    @property
    def session_playtime(self) -> str:
        return format_playtime(self.connected_seconds)

    def apply_geo(self, geo: GeoInfo) -> None:
        self.country = geo.country
        self.country_code = geo.country_code
        self.city = geo.city

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "steam_id": self.steam_id,
            "name": self.name,
            "ip": self.ip,
            "country": self.country,
            "country_code": self.country_code,
            "city": self.city,
            "ping": self.ping,
            "connected_seconds": self.connected_seconds,
            "is_online": self.is_online,
            "last_seen": self.last_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], now: Optional[datetime] = None) -> "Player":
        """
        Restore a persisted player.

        Restored players are always offline; a missing or unreadable
        last_seen becomes ``now``.
        """
        now = now or _utcnow()
        last_seen = now
        raw_last_seen = data.get("last_seen")
        if raw_last_seen:
            try:
                last_seen = datetime.fromisoformat(str(raw_last_seen))
            except ValueError:
                logger.warning("player_last_seen_invalid", steam_id=data.get("steam_id"), value=raw_last_seen)
        if last_seen.tzinfo is None:
            last_seen = last_seen.replace(tzinfo=timezone.utc)

        return cls(
            steam_id=str(data["steam_id"]),
            name=str(data.get("name", "")),
            ip=str(data.get("ip") or ""),
            country=str(data.get("country") or ""),
            country_code=str(data.get("country_code") or ""),
            city=data.get("city"),
            ping=int(data.get("ping") or 0),
            connected_seconds=int(data.get("connected_seconds") or 0),
            is_online=False,
            last_seen=last_seen,
        )


class PlayerRoster:
    """All players ever seen, keyed by Steam ID."""

    def __init__(
        self,
        geo: GeoLookup,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Args:
            geo: Anything with ``async resolve(address) -> GeoInfo``.
            clock: Source of "now" for last_seen stamps.
        """
        self.geo = geo
        self.clock = clock
        self.players: Dict[str, Player] = {}

    def __len__(self) -> int:
        return len(self.players)

    def __contains__(self, steam_id: object) -> bool:
        return steam_id in self.players

    def get(self, steam_id: str) -> Optional[Player]:
        return self.players.get(steam_id)

    def online_players(self) -> List[Player]:
        return [p for p in self.players.values() if p.is_online]

    def history_players(self) -> List[Player]:
        """Offline players, most recently seen first."""
        return sorted(
            (p for p in self.players.values() if not p.is_online),
            key=lambda p: p.last_seen,
            reverse=True,
        )

    async def reconcile(self, records: Iterable[PlayerRecord]) -> None:
        """
        Merge one playerlist snapshot into the roster.

        Players present in the snapshot are updated (or created) and marked
        online with last_seen = now. Known online players missing from the
        snapshot go offline and keep their last_seen.

        Args:
            records: Snapshot entries in server order.
        """
        records = list(records)
        online_ids = {r.steam_id for r in records}
        created = 0

        for record in records:
            now = self.clock()
            player = self.players.get(record.steam_id)

            if player is not None:
                if player.geo_unresolved:
                    geo = await self.geo.resolve(record.ip)
                    if geo.is_resolved:
                        player.apply_geo(geo)

                player.name = record.display_name
                player.ping = record.ping
                player.connected_seconds = record.connected_seconds
                player.is_online = True
                player.last_seen = now
            else:
                geo = await self.geo.resolve(record.ip)
                player = Player(
                    steam_id=record.steam_id,
                    name=record.display_name,
                    ip=record.ip,
                    country=geo.country,
                    country_code=geo.country_code,
                    city=geo.city,
                    ping=record.ping,
                    connected_seconds=record.connected_seconds,
                    is_online=True,
                    last_seen=now,
                )
                self.players[record.steam_id] = player
                created += 1
                logger.info(
                    "player_first_seen",
                    steam_id=record.steam_id,
                    name=record.display_name,
                    country=geo.country,
                )

        went_offline = 0
        for player in self.players.values():
            if player.steam_id not in online_ids and player.is_online:
                player.is_online = False
                went_offline += 1

        logger.debug(
            "roster_reconciled",
            online=len(online_ids),
            known=len(self.players),
            created=created,
            went_offline=went_offline,
        )

    def load(self, entries: Any) -> int:
        """
        Restore persisted players, replacing the current roster.

        Invalid entries are skipped. Returns the number restored.
        """
        if not isinstance(entries, list):
            if entries is not None:
                logger.warning("roster_history_not_list", type=type(entries).__name__)
            return 0

        now = self.clock()
        restored: Dict[str, Player] = {}
        for entry in entries:
            try:
                player = Player.from_dict(entry, now=now)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning("roster_entry_invalid", error=str(exc))
                continue
            restored[player.steam_id] = player

        self.players = restored
        logger.info("roster_history_restored", players=len(restored))
        return len(restored)

    def to_list(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.players.values()]


@dataclass(frozen=True, slots=True)
class BannedPlayer:
    """One row of the server ban list."""
    steam_id: str
    name: str
    reason: str = ""


class BanList:
    """
    Ban list accumulated from banlist output rows.

    Rebuilt from scratch on every refresh: ``clear()`` then one ``add()``
    per row. Repeated Steam IDs are ignored.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, BannedPlayer] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BannedPlayer]:
        return iter(list(self._entries.values()))

    def __contains__(self, steam_id: object) -> bool:
        return steam_id in self._entries

    def clear(self) -> None:
        self._entries.clear()

    def add(self, steam_id: str, name: str, reason: str = "") -> bool:
        """Add a row. Returns False if the Steam ID is already listed."""
        if steam_id in self._entries:
            return False
        self._entries[steam_id] = BannedPlayer(steam_id=steam_id, name=name, reason=reason)
        return True

    def remove(self, steam_id: str) -> bool:
        return self._entries.pop(steam_id, None) is not None

    def entries(self) -> List[BannedPlayer]:
        return list(self._entries.values())
