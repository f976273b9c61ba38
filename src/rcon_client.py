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
WebRCON transport for Rust servers.

Rust exposes its console as a websocket at ws://host:port/<password>.
Commands go out as JSON frames {"Identifier", "Message", "Name"}; the server
answers with JSON frames carrying a "Message" field, or occasionally plain
text.

The session engine only depends on the small interface implemented here:
open(url), receive() (async iterator of text frames), send(text), close().
"""

from __future__ import annotations

import json
import re
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import aiohttp
import structlog

logger = structlog.get_logger()

COMMAND_SOURCE_NAME = "WebRcon"


class RconError(Exception):
    """Base class for session errors."""


class InvalidConfiguration(RconError):
    """Host, port or password missing. No connection attempt is made."""


class TransportError(RconError):
    """The websocket failed; the message is shown to the operator verbatim."""


class ConnectTimeout(RconError):
    """No websocket handshake within the connect deadline."""


def redact_url(url: str) -> str:
    """Hide the password path segment of a WebRCON URL for logging."""
    return re.sub(r"^(wss?://[^/]+/).+$", r"\1***", url)


def build_command_frame(identifier: int, command: str) -> str:
    """Serialize one outbound command."""
    return json.dumps(
        {
            "Identifier": identifier,
            "Message": command,
            "Name": COMMAND_SOURCE_NAME,
        }
    )


def decode_frame(data: str) -> Tuple[str, Optional[Dict[str, Any]]]:
    """
    Split an inbound frame into console text and structured payload.

    Returns:
        (text, payload): for a JSON object with a truthy "Message" field the
        text is that message and payload is the parsed object; for anything
        else the text is the raw frame and payload is None.
    """
    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, TypeError):
        return data, None

    if isinstance(parsed, dict) and parsed.get("Message"):
        return str(parsed["Message"]), parsed

    return data, None


class WebRconTransport:
    """One websocket connection to a WebRCON endpoint."""

    def __init__(self, heartbeat: Optional[float] = None) -> None:
        """
        Args:
            heartbeat: Optional websocket ping interval in seconds. The
                session keeps the link busy with playerlist polling, so
                this is off by default.
        """
        self.heartbeat = heartbeat
        self.session: Optional[aiohttp.ClientSession] = None
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def is_open(self) -> bool:
        return self.ws is not None and not self.ws.closed

    async def open(self, url: str) -> None:
        """
        Perform the websocket handshake.

        Raises:
            TransportError: if the handshake fails.
        """
        if self.session is None:
            self.session = aiohttp.ClientSession()

        logger.debug("webrcon_opening", url=redact_url(url))
        try:
            self.ws = await self.session.ws_connect(url, heartbeat=self.heartbeat)
        except (aiohttp.ClientError, OSError) as e:
            await self.close()
            raise TransportError(str(e) or type(e).__name__) from e

        logger.debug("webrcon_open", url=redact_url(url))

    async def receive(self) -> AsyncIterator[str]:
        """
        Yield text frames until the server closes the socket.

        Raises:
            TransportError: on a websocket error frame.
        """
        if self.ws is None:
            raise TransportError("WebRCON socket is not open")

        async for msg in self.ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                yield msg.data.decode("utf-8", errors="replace")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                exc = self.ws.exception()
                raise TransportError(str(exc) if exc else "WebRCON socket error")
            else:
                break

        logger.debug(
            "webrcon_closed_by_remote",
            close_code=self.ws.close_code if self.ws is not None else None,
        )

    async def send(self, frame: str) -> None:
        if self.ws is None or self.ws.closed:
            raise TransportError("WebRCON socket is not open")
        try:
            await self.ws.send_str(frame)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def close(self) -> None:
        """Close socket and HTTP session. Safe to call more than once."""
        ws, self.ws = self.ws, None
        session, self.session = self.session, None

        if ws is not None and not ws.closed:
            await ws.close()
        if session is not None:
            await session.close()
