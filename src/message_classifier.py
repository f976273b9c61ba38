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
Classifier for inbound WebRCON console text.

Every inbound text unit gets exactly one MessageKind. The rules in
CLASSIFICATION_RULES are evaluated top to bottom and the first rule that
returns a result wins. Order matters:

1. echo        - bare command echoes ("playerlist", "banlist") are suppressed
2. header      - the ban-list table header is suppressed
3. snapshot    - a JSON array with "SteamID" is a player snapshot; a unit that
                 fails to parse falls through to the rules below
4. protected   - kill/death/connection lines are always logged, even when they
                 also look like a ban row
5. ban_row     - <17-digit id> "<name>" "<reason>" is a ban-list row and is
                 never forwarded to the log
6. default     - anything else is an event log line

Ambiguous input never raises; it ends up as EVENT_LOG.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger()

PLAYERLIST_COMMAND = "playerlist"
BANLIST_COMMAND = "banlist"
ECHO_COMMANDS = frozenset({PLAYERLIST_COMMAND, BANLIST_COMMAND})

HEADER_COLUMNS = ("SteamID", "Username", "Reason")
SNAPSHOT_MARKER = '"SteamID"'

PROTECTED_EVENT_RE = re.compile(
    r"kill|death|died|suicide|bleeding|wound|landmine|join|connect|disconnect|leave|left",
    re.IGNORECASE,
)
BAN_ROW_RE = re.compile(r'(?:^|\s)(\d{17})\s+"([^"]+)"\s+"([^"]*)"')
STEAM_ID_RE = re.compile(r"\d{17}")


class MessageKind(str, Enum):
    """Classification result for one inbound unit."""
    PLAYER_SNAPSHOT = "player_snapshot"
    BAN_LIST_ROW = "ban_list_row"
    EVENT_LOG = "event_log"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True, slots=True)
class PlayerRecord:
    """One entry of a playerlist snapshot, as reported by the server."""
    steam_id: str
    display_name: str
    ping: int
    address: str
    connected_seconds: int
    health: float = 0.0

    @property
    def ip(self) -> str:
        """Address without the port."""
        return self.address.split(":")[0]

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "PlayerRecord":
        """
        Build a record from one snapshot object.

        Raises:
            KeyError, TypeError, ValueError: if the object is not a player entry.
        """
        raw_id = raw["SteamID"]
        steam_id = "" if raw_id is None or isinstance(raw_id, bool) else str(raw_id)
        if not STEAM_ID_RE.fullmatch(steam_id):
            raise ValueError(f"invalid SteamID: {raw_id!r}")
        return cls(
            steam_id=steam_id,
            display_name=str(raw.get("DisplayName", "")),
            ping=int(raw.get("Ping") or 0),
            address=str(raw.get("Address") or ""),
            connected_seconds=int(raw.get("ConnectedSeconds") or 0),
            health=float(raw.get("Health") or 0.0),
        )


@dataclass(frozen=True, slots=True)
class ClassifiedMessage:
    """A classified inbound unit with the fields extracted for its kind."""
    kind: MessageKind
    text: str
    rule: str = "default"
    players: Tuple[PlayerRecord, ...] = ()
    steam_id: Optional[str] = None
    name: Optional[str] = None
    reason: Optional[str] = None


Rule = Callable[[str, str], Optional[ClassifiedMessage]]


def parse_snapshot(text: str) -> Tuple[PlayerRecord, ...]:
    """
    Parse a playerlist JSON array.

    Raises:
        ValueError: if the text is not a JSON array of player objects.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid snapshot JSON: {exc}") from exc

    if not isinstance(data, list):
        raise ValueError(f"snapshot must be a list, got {type(data).__name__}")

    try:
        return tuple(PlayerRecord.from_raw(item) for item in data)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ValueError(f"invalid snapshot entry: {exc}") from exc


def _echo_rule(text: str, trimmed: str) -> Optional[ClassifiedMessage]:
    if trimmed in ECHO_COMMANDS:
        return ClassifiedMessage(MessageKind.SUPPRESSED, text, rule="echo")
    return None


def _header_rule(text: str, trimmed: str) -> Optional[ClassifiedMessage]:
    if all(col in trimmed for col in HEADER_COLUMNS) and not trimmed.startswith("["):
        return ClassifiedMessage(MessageKind.SUPPRESSED, text, rule="header")
    return None


def _snapshot_rule(text: str, trimmed: str) -> Optional[ClassifiedMessage]:
    if not (trimmed.startswith("[") and SNAPSHOT_MARKER in trimmed):
        return None
    try:
        players = parse_snapshot(trimmed)
    except ValueError as exc:
        logger.debug("snapshot_parse_failed", error=str(exc), preview=trimmed[:100])
        return None
    return ClassifiedMessage(MessageKind.PLAYER_SNAPSHOT, text, rule="snapshot", players=players)


def _protected_event_rule(text: str, trimmed: str) -> Optional[ClassifiedMessage]:
    if PROTECTED_EVENT_RE.search(trimmed):
        return ClassifiedMessage(MessageKind.EVENT_LOG, text, rule="protected")
    return None


def _ban_row_rule(text: str, trimmed: str) -> Optional[ClassifiedMessage]:
    match = BAN_ROW_RE.search(text)
    if not match:
        return None
    steam_id, name, reason = match.groups()
    return ClassifiedMessage(
        MessageKind.BAN_LIST_ROW,
        text,
        rule="ban_row",
        steam_id=steam_id,
        name=name,
        reason=reason,
    )


def _default_rule(text: str, trimmed: str) -> Optional[ClassifiedMessage]:
    return ClassifiedMessage(MessageKind.EVENT_LOG, text, rule="default")


# Evaluated in this order; see module docstring before reordering.
CLASSIFICATION_RULES: List[Tuple[str, Rule]] = [
    ("echo", _echo_rule),
    ("header", _header_rule),
    ("snapshot", _snapshot_rule),
    ("protected", _protected_event_rule),
    ("ban_row", _ban_row_rule),
    ("default", _default_rule),
]


class MessageClassifier:
    """Classify inbound console text with an ordered rule list."""

    def __init__(self, rules: Optional[List[Tuple[str, Rule]]] = None) -> None:
        self.rules: List[Tuple[str, Rule]] = list(rules) if rules is not None else list(CLASSIFICATION_RULES)

    def classify(self, text: str) -> ClassifiedMessage:
        """
        Classify one inbound unit.

        Args:
            text: Raw text of the unit (the Message field for JSON frames).

        Returns:
            The first rule result, or EVENT_LOG if no rule claims the text.
        """
        if not isinstance(text, str):
            raise AssertionError(f"text must be str, got {type(text)}")

        trimmed = text.strip()
        for name, rule in self.rules:
            result = rule(text, trimmed)
            if result is not None:
                if result.kind is not MessageKind.EVENT_LOG:
                    logger.debug("message_classified", kind=result.kind.value, rule=name)
                return result

        return ClassifiedMessage(MessageKind.EVENT_LOG, text, rule="fallthrough")


class LogSeverity(str, Enum):
    """Display severity of a console line."""
    ERROR = "error"
    WARNING = "warning"
    CHAT = "chat"
    SYSTEM = "system"
    INFO = "info"


def log_severity(line: str) -> LogSeverity:
    """Severity of a console line, from the server's own tags."""
    if "[Error]" in line or "Exception" in line:
        return LogSeverity.ERROR
    if "[Warning]" in line:
        return LogSeverity.WARNING
    if "[Chat]" in line:
        return LogSeverity.CHAT
    if line.startswith("[SYSTEM]") or line.startswith("[ADMIN]"):
        return LogSeverity.SYSTEM
    return LogSeverity.INFO
