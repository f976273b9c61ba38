"""
Rust RCON Console - Main Entry Point

Headless WebRCON administration session:
- Connects to a Rust server over WebRCON (optionally on startup)
- Keeps the online/history player roster with geolocation
- Persists the roster and last-used connection settings locally
- Exposes /health for container orchestration
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any, Optional

import structlog

# Import helpers with support for package vs. flat layout
try:
    # Package-style imports (python -m src.main)
    from .config import Config, ConnectionConfig, load_config, validate_config  # type: ignore
    from .geo_resolver import GeoResolver  # type: ignore
    from .health import HealthCheckServer  # type: ignore
    from .session_engine import NotificationType, RconSession, SessionNotification  # type: ignore
    from .store import CONNECTION_CONFIG_KEY, PLAYERS_KEY, JsonFileStore  # type: ignore
except ImportError:
    # Flat layout (tests and direct execution)
    from config import Config, ConnectionConfig, load_config, validate_config  # type: ignore
    from geo_resolver import GeoResolver  # type: ignore
    from health import HealthCheckServer  # type: ignore
    from session_engine import NotificationType, RconSession, SessionNotification  # type: ignore
    from store import CONNECTION_CONFIG_KEY, PLAYERS_KEY, JsonFileStore  # type: ignore

logger = structlog.get_logger()


def setup_logging(log_level: str, log_format: str) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (debug, info, warning, error, critical)
        log_format: Output format ("json" or "console")
    """
    level_map: dict[str, int] = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    min_level = level_map.get(log_level.lower(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # aiohttp (websocket client, geo lookups, health server) logs via stdlib
    logging.basicConfig(level=min_level, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("aiohttp.access").setLevel(max(min_level, logging.WARNING))

    logger.info("logging_configured", level=log_level, format=log_format)


class Application:
    """Main application orchestrator around a single RconSession."""

    def __init__(self) -> None:
        """Initialize application components."""
        self.config: Optional[Config] = None
        self.store: Optional[JsonFileStore] = None
        self.session: Optional[RconSession] = None
        self.health_server: Optional[HealthCheckServer] = None
        self.shutdown_event: asyncio.Event = asyncio.Event()

    async def setup(self) -> None:
        """Load configuration and initialize core components."""
        logger.info("application_starting")

        try:
            config = load_config()
            self.store = JsonFileStore(config.data_path)

            # Last-used connection settings overlay config.yml
            saved = self.store.get(CONNECTION_CONFIG_KEY)
            if isinstance(saved, dict) and saved:
                config = load_config(saved_connection=saved)

            self.config = config
            if not validate_config(self.config):
                raise ValueError("Configuration validation failed")
        except Exception as e:
            logger.error("config_load_failed", error=str(e))
            raise

        assert self.config is not None
        setup_logging(self.config.log_level, self.config.log_format)

        geo = GeoResolver(timeout=self.config.geo_timeout)
        self.session = RconSession(
            geo=geo,
            poll_interval=self.config.poll_interval,
            connect_timeout=self.config.connect_timeout,
            reconnect_delay=self.config.reconnect_delay,
            log_buffer_size=self.config.log_buffer_size,
        )
        self.session.add_listener(self.handle_notification)

        restored = self.session.roster.load(self.store.get(PLAYERS_KEY))
        logger.info("player_history_loaded", players=restored)

        self.health_server = HealthCheckServer(
            host=self.config.health_check_host,
            port=self.config.health_check_port,
            session=self.session,
        )

        logger.info(
            "application_configured",
            health_port=self.config.health_check_port,
            server=self.config.connection.server_name,
            auto_connect=self.config.connection.auto_connect,
        )

    async def start(self) -> None:
        """Start health server and, if configured, the RCON connection."""
        assert self.config is not None, "Config not loaded"
        assert self.health_server is not None, "Health server not initialized"

        await self.health_server.start()

        if self.config.connection.auto_connect:
            await self.connect(self.config.connection)

        logger.info("application_running")

    async def connect(self, connection: ConnectionConfig) -> None:
        """Connect and remember the settings as last used."""
        assert self.session is not None
        assert self.store is not None

        await self.session.connect(connection)
        self.store.set(CONNECTION_CONFIG_KEY, connection.to_dict())

    def handle_notification(self, notification: SessionNotification) -> None:
        """Persist roster changes. Console lines are already logged by the session."""
        if notification.type is NotificationType.ERROR:
            logger.warning("rcon_session_error", error=notification.payload)
        elif notification.type is NotificationType.ROSTER_CHANGED:
            self.save_roster()
        elif notification.type is NotificationType.BANLIST_CHANGED:
            logger.debug("banlist_changed", banned=len(notification.payload or []))

    def save_roster(self) -> None:
        if self.session is None or self.store is None:
            return
        # An empty roster is only written while connected, so a failed start
        # never wipes the stored history.
        if len(self.session.roster) > 0 or self.session.is_connected:
            self.store.set(PLAYERS_KEY, self.session.roster.to_list())

    async def stop(self) -> None:
        """Gracefully stop all components."""
        logger.info("application_stopping")

        if self.session is not None:
            try:
                await self.session.shutdown()
            except Exception as e:
                logger.error("session_shutdown_failed", error=str(e))
            self.save_roster()
            logger.debug("session_stopped")

        if self.health_server is not None:
            try:
                await self.health_server.stop()
            except Exception as e:
                logger.warning("health_server_stop_failed", error=str(e))
            logger.debug("health_server_stopped")

        logger.info("application_stopped")

    async def run(self) -> None:
        """Main application run loop."""
        try:
            await self.setup()
            await self.start()
            await self.shutdown_event.wait()
        except KeyboardInterrupt:
            logger.info("received_keyboard_interrupt")
        except Exception as e:
            logger.error("application_error", error=str(e), exc_info=True)
            raise
        finally:
            await self.stop()


async def main() -> None:
    """Main async entry point."""
    app = Application()

    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("received_signal", signal=signal.Signals(signum).name)
        app.shutdown_event.set()

    # Only register signals on real OS (not always available on Windows/threads)
    try:
        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)
    except (ValueError, OSError) as e:
        logger.debug("signal_handlers_unavailable", error=str(e))

    try:
        await app.run()
    except Exception as e:
        logger.error("fatal_error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown complete.")
        sys.exit(0)
