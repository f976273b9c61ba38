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
RCON session engine.

Owns the single WebRCON connection and its state machine:

    DISCONNECTED/ERROR --connect()--> CONNECTING
    CONNECTING --open--> CONNECTED        (immediate playerlist, then every poll_interval)
    CONNECTING --deadline--> ERROR        (transport closed once, timeout reported)
    CONNECTED --disconnect()/remote close--> DISCONNECTED
    CONNECTED/CONNECTING --transport error--> ERROR
    any --reconnect()--> DISCONNECTED --reconnect_delay--> CONNECTING

Inbound frames are classified and routed to the roster, the ban list or the
console log. Everything interested in the session subscribes with
add_listener() and receives SessionNotification objects.

Each connect() starts a new connection generation. Tasks belonging to an
older generation (deadline, poll loop, receive loop) check the generation
before touching state, so a stale timer can never move a newer session.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

import structlog

try:
    from .config import ConnectionConfig
    from .geo_resolver import GeoInfo, GeoResolver
    from .message_classifier import (
        BANLIST_COMMAND,
        PLAYERLIST_COMMAND,
        MessageClassifier,
        MessageKind,
        PlayerRecord,
    )
    from .rcon_client import (
        ConnectTimeout,
        InvalidConfiguration,
        WebRconTransport,
        build_command_frame,
        decode_frame,
    )
    from .roster import BanList, PlayerRoster
except ImportError:
    from config import ConnectionConfig  # type: ignore
    from geo_resolver import GeoInfo, GeoResolver  # type: ignore
    from message_classifier import (  # type: ignore
        BANLIST_COMMAND,
        PLAYERLIST_COMMAND,
        MessageClassifier,
        MessageKind,
        PlayerRecord,
    )
    from rcon_client import (  # type: ignore
        ConnectTimeout,
        InvalidConfiguration,
        WebRconTransport,
        build_command_frame,
        decode_frame,
    )
    from roster import BanList, PlayerRoster  # type: ignore

logger = structlog.get_logger()

FIRST_COMMAND_ID = 1001
DEFAULT_KICK_REASON = "Kicked by Admin"
DEFAULT_BAN_REASON = "Banned by Admin"


class ConnectionState(str, Enum):
    """Connection state of the session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class NotificationType(str, Enum):
    """Outbound notifications for whatever presents the session."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    LOG = "log"
    MESSAGE = "message"
    ROSTER_CHANGED = "roster_changed"
    BANLIST_CHANGED = "banlist_changed"
    STATE_CHANGED = "state_changed"


@dataclass(frozen=True, slots=True)
class SessionNotification:
    type: NotificationType
    payload: Any = None


Listener = Callable[[SessionNotification], None]


class RconSession:
    """Single WebRCON session with roster, ban list and console log."""

    def __init__(
        self,
        geo: Optional[GeoResolver] = None,
        transport_factory: Optional[Callable[[], Any]] = None,
        classifier: Optional[MessageClassifier] = None,
        roster: Optional[PlayerRoster] = None,
        poll_interval: float = 5.0,
        connect_timeout: float = 10.0,
        reconnect_delay: float = 1.0,
        log_buffer_size: int = 1000,
        action_refresh_delay: float = 1.0,
    ) -> None:
        """
        Initialize the session.

        Args:
            geo: Geolocation cascade used by the roster and resolve_geo().
            transport_factory: Returns a fresh transport per connection
                (open/receive/send/close). Defaults to WebRconTransport.
            classifier: Inbound message classifier.
            roster: Player roster; built on ``geo`` if omitted.
            poll_interval: Seconds between playerlist commands while connected.
            connect_timeout: Seconds to wait for the handshake.
            reconnect_delay: Pause between forced disconnect and new connect.
            log_buffer_size: Console lines kept (oldest dropped first).
            action_refresh_delay: Delay before refreshing the ban list after
                ban/unban.
        """
        self.geo = geo or GeoResolver()
        self.transport_factory: Callable[[], Any] = transport_factory or WebRconTransport
        self.classifier = classifier or MessageClassifier()
        self.roster = roster or PlayerRoster(self.geo)
        self.banlist = BanList()
        self.logs: Deque[str] = deque(maxlen=log_buffer_size)

        self.poll_interval = poll_interval
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.action_refresh_delay = action_refresh_delay

        # State
        self.state = ConnectionState.DISCONNECTED
        self.config: Optional[ConnectionConfig] = None
        self.command_counter = FIRST_COMMAND_ID
        self._transport: Optional[Any] = None
        self._generation = 0

        # Timers and workers; at most one of each per session
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._timeout_task: Optional[asyncio.Task[None]] = None
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._background_tasks: Set[asyncio.Task[Any]] = set()

        # Snapshot reconciliation: one worker, at most one snapshot waiting
        self._pending_snapshot: Optional[Tuple[PlayerRecord, ...]] = None
        self._reconcile_task: Optional[asyncio.Task[None]] = None

        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, notification_type: NotificationType, payload: Any = None) -> None:
        notification = SessionNotification(notification_type, payload)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.error(
                    "session_listener_failed",
                    notification=notification_type.value,
                    error=str(e),
                    exc_info=True,
                )

    def _append_log(self, line: str) -> None:
        self.logs.append(line)
        self._emit(NotificationType.LOG, line)

    def _set_state(self, new_state: ConnectionState, error: Optional[str] = None) -> bool:
        """Move to ``new_state`` and notify. Returns False if already there."""
        if new_state is self.state:
            return False

        previous = self.state
        self.state = new_state
        logger.info(
            "rcon_state_changed",
            previous=previous.value,
            state=new_state.value,
            error=error,
        )
        self._emit(NotificationType.STATE_CHANGED, new_state)

        if new_state is ConnectionState.CONNECTED:
            self._emit(NotificationType.CONNECTED)
        elif new_state is ConnectionState.DISCONNECTED:
            self._emit(NotificationType.DISCONNECTED)
        elif new_state is ConnectionState.ERROR:
            self._emit(NotificationType.ERROR, error or "Unknown error")
        return True

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def connect(self, config: ConnectionConfig) -> None:
        """
        Start connecting to ``config``.

        Any existing transport is torn down first. Returns as soon as the
        handshake has been started; the outcome arrives as a CONNECTED,
        ERROR or DISCONNECTED notification.

        Raises:
            InvalidConfiguration: if host, RCON port or password is empty.
        """
        missing = config.missing_fields()
        if missing:
            logger.warning("rcon_connect_invalid_configuration", missing=missing)
            self._append_log("[SYSTEM] Error: IP, Port, or Password is missing.")
            raise InvalidConfiguration(
                f"Missing connection settings: {', '.join(missing)}"
            )

        self._cancel_reconnect()
        await self._teardown()

        self.config = config
        generation = self._generation
        transport = self.transport_factory()
        self._transport = transport

        self._set_state(ConnectionState.CONNECTING)
        self._append_log(
            f"[SYSTEM] Connecting to {config.host}:{config.rcon_port} via WebRCON..."
        )
        logger.info(
            "rcon_connecting",
            host=config.host,
            port=config.rcon_port,
            server_name=config.server_name,
            timeout=self.connect_timeout,
        )

        self._receive_task = asyncio.create_task(
            self._run_transport(transport, config.url, generation)
        )
        self._timeout_task = asyncio.create_task(self._connect_deadline(generation))

    async def disconnect(self) -> bool:
        """Close the connection (or cancel a handshake). Always succeeds."""
        self._cancel_reconnect()
        await self._teardown()

        if self._set_state(ConnectionState.DISCONNECTED):
            self._append_log("[SYSTEM] Disconnected.")
            logger.info("rcon_disconnected")
        return True

    async def reconnect(self, config: Optional[ConnectionConfig] = None) -> None:
        """
        Force DISCONNECTED, then connect again after ``reconnect_delay``.

        Raises:
            InvalidConfiguration: if there is no configuration to reconnect with.
        """
        config = config or self.config
        if config is None:
            raise InvalidConfiguration("No connection settings to reconnect with")

        await self.disconnect()
        self._append_log("[SYSTEM] Reconnecting...")
        logger.info("rcon_reconnect_scheduled", delay=self.reconnect_delay)
        self._reconnect_task = asyncio.create_task(self._delayed_connect(config))

    async def _delayed_connect(self, config: ConnectionConfig) -> None:
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        try:
            await self.connect(config)
        except InvalidConfiguration as e:
            logger.warning("rcon_reconnect_invalid_configuration", error=str(e))

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _teardown(self) -> None:
        """
        Invalidate the current connection generation, stop its tasks and
        close its transport. Does not change state.
        """
        self._generation += 1
        current = asyncio.current_task()

        tasks = [self._timeout_task, self._poll_task, self._receive_task]
        self._timeout_task = None
        self._poll_task = None
        self._receive_task = None

        for task in tasks:
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug("rcon_task_teardown_error", error=str(e))

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning("rcon_transport_close_failed", error=str(e))

    async def _run_transport(self, transport: Any, url: str, generation: int) -> None:
        """Open the transport, then pump inbound frames until it closes."""
        try:
            await transport.open(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._on_transport_error(generation, e)
            return

        if generation != self._generation:
            return
        self._on_open(generation)

        try:
            async for frame in transport.receive():
                if generation != self._generation:
                    return
                self.handle_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._on_transport_error(generation, e)
            return

        await self._on_remote_close(generation)

    def _on_open(self, generation: int) -> None:
        timeout_task, self._timeout_task = self._timeout_task, None
        if timeout_task is not None and not timeout_task.done():
            timeout_task.cancel()

        self._set_state(ConnectionState.CONNECTED)
        self._append_log("[SYSTEM] Connected successfully.")

        if self.config is not None:
            logger.info("rcon_connected", host=self.config.host, port=self.config.rcon_port)

        self._poll_task = asyncio.create_task(self._poll_loop(generation))

    async def _poll_loop(self, generation: int) -> None:
        """Request a playerlist now and then every poll_interval seconds."""
        while generation == self._generation and self.is_connected:
            await self.send(PLAYERLIST_COMMAND)
            await asyncio.sleep(self.poll_interval)

    async def _connect_deadline(self, generation: int) -> None:
        await asyncio.sleep(self.connect_timeout)
        if generation != self._generation or self.state is not ConnectionState.CONNECTING:
            return

        error = ConnectTimeout(f"Connection timed out ({self.connect_timeout:g}s)")
        logger.warning("rcon_connect_timeout", timeout=self.connect_timeout)
        self._set_state(ConnectionState.ERROR, str(error))
        self._append_log(f"[SYSTEM] {error}.")
        await self._teardown()

    async def _on_transport_error(self, generation: int, exc: Exception) -> None:
        if generation != self._generation:
            logger.debug("rcon_stale_transport_error_ignored", error=str(exc))
            return

        message = str(exc) or type(exc).__name__
        logger.error("rcon_transport_error", error=message, error_type=type(exc).__name__)
        self._set_state(ConnectionState.ERROR, message)
        self._append_log(f"[ERROR] {message}")
        await self._teardown()

    async def _on_remote_close(self, generation: int) -> None:
        if generation != self._generation:
            return

        logger.info("rcon_closed_by_server")
        await self._teardown()
        if self._set_state(ConnectionState.DISCONNECTED):
            self._append_log("[SYSTEM] Disconnected.")

    async def shutdown(self) -> None:
        """Disconnect and stop all background work (application exit)."""
        await self.disconnect()

        self._pending_snapshot = None
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self.geo.close()
        logger.info("rcon_session_shutdown")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send(self, command: str) -> bool:
        """
        Send a console command.

        Returns:
            True if the frame was written, False if the session is not
            connected or the write failed. Never raises for either case.
        """
        transport = self._transport
        if self.state is not ConnectionState.CONNECTED or transport is None:
            logger.debug("rcon_send_dropped_not_connected", command=command[:50], state=self.state.value)
            return False

        identifier = self.command_counter
        self.command_counter += 1

        try:
            await transport.send(build_command_frame(identifier, command))
        except Exception as e:
            logger.warning("rcon_send_failed", command=command[:50], error=str(e))
            return False

        logger.debug("rcon_command_sent", identifier=identifier, command=command[:50])
        return True

    async def refresh_banlist(self) -> bool:
        """Clear the ban list and request it again from the server."""
        self.banlist.clear()
        self._emit(NotificationType.BANLIST_CHANGED, [])
        return await self.send(BANLIST_COMMAND)

    async def kick(self, steam_id: str, reason: str = DEFAULT_KICK_REASON) -> bool:
        return await self._admin_command("kick", steam_id, reason)

    async def ban(self, steam_id: str, reason: str = DEFAULT_BAN_REASON) -> bool:
        """Ban a player and refresh the ban list shortly after."""
        sent = await self._admin_command("ban", steam_id, reason)
        if sent:
            self._schedule_later(self.action_refresh_delay, self.refresh_banlist)
        return sent

    async def unban(self, steam_id: str) -> bool:
        """Lift a ban, drop it from the local list and refresh shortly after."""
        command = f"unban {steam_id}"
        self._append_log(f"[ADMIN] Executing: {command}")
        sent = await self.send(command)
        if sent:
            if self.banlist.remove(steam_id):
                self._emit(NotificationType.BANLIST_CHANGED, self.banlist.entries())
            self._schedule_later(self.action_refresh_delay, self.refresh_banlist)
        return sent

    async def _admin_command(self, action: str, steam_id: str, reason: str) -> bool:
        reason = reason.replace('"', "'")
        command = f'{action} {steam_id} "{reason}"'
        self._append_log(f"[ADMIN] Executing: {command}")
        logger.info("rcon_admin_action", action=action, steam_id=steam_id, reason=reason)
        return await self.send(command)

    def _schedule_later(self, delay: float, func: Callable[[], Awaitable[Any]]) -> None:
        async def _run() -> None:
            await asyncio.sleep(delay)
            await func()

        self._track(asyncio.create_task(_run()))

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def resolve_geo(self, ip: str) -> GeoInfo:
        return await self.geo.resolve(ip)

    # ------------------------------------------------------------------
    # Inbound routing
    # ------------------------------------------------------------------

    def handle_frame(self, frame: str) -> None:
        """Classify one inbound frame and route it."""
        text, payload = decode_frame(frame)
        if payload is not None:
            self._emit(NotificationType.MESSAGE, payload)

        result = self.classifier.classify(text)

        if result.kind is MessageKind.PLAYER_SNAPSHOT:
            self._queue_snapshot(result.players)
        elif result.kind is MessageKind.BAN_LIST_ROW:
            assert result.steam_id is not None
            if self.banlist.add(result.steam_id, result.name or "", result.reason or ""):
                self._emit(NotificationType.BANLIST_CHANGED, self.banlist.entries())
        elif result.kind is MessageKind.EVENT_LOG:
            logger.debug("console_line", line=text[:200])
            self._append_log(text)

    def _queue_snapshot(self, players: Tuple[PlayerRecord, ...]) -> None:
        """
        Hand a snapshot to the reconcile worker.

        Only the latest snapshot matters for presence, so a snapshot still
        waiting behind a slow cycle (geo lookups) is replaced, not queued.
        """
        if self._pending_snapshot is not None:
            logger.debug("roster_snapshot_superseded", dropped=len(self._pending_snapshot))
        self._pending_snapshot = players

        if self._reconcile_task is None or self._reconcile_task.done():
            self._reconcile_task = asyncio.create_task(self._reconcile_worker())
            self._track(self._reconcile_task)

    async def _reconcile_worker(self) -> None:
        """Apply waiting snapshots one at a time until none is left."""
        while self._pending_snapshot is not None:
            players, self._pending_snapshot = self._pending_snapshot, None
            try:
                await self.roster.reconcile(players)
            except Exception as e:
                logger.error("roster_reconcile_failed", error=str(e), exc_info=True)
                continue
            self._emit(NotificationType.ROSTER_CHANGED, self.roster)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search_logs(self, term: str) -> List[str]:
        """Console lines containing ``term`` (case-insensitive)."""
        needle = term.lower()
        return [line for line in self.logs if needle in line.lower()]

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "server": self.config.server_name if self.config else None,
            "online_players": len(self.roster.online_players()),
            "known_players": len(self.roster),
            "banned_players": len(self.banlist),
            "log_lines": len(self.logs),
        }
