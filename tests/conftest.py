"""pytest configuration for the RCON session tests.

This module provides:
- src/ on sys.path for flat-layout imports (``from session_engine import ...``)
- Async test markers with @pytest.mark.asyncio
- Fake transport / geo fixtures so no test touches the network
"""

import sys
from pathlib import Path

import pytest

# Add src/ to Python path for absolute imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from config import ConnectionConfig  # noqa: E402
from fakes import FakeGeo, TransportFactory  # noqa: E402

pytest_plugins = ['pytest_asyncio']


def pytest_configure(config) -> None:
    """Register the asyncio marker so tests can use @pytest.mark.asyncio."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async (deselect with '-m \"not asyncio\"')"
    )


@pytest.fixture
def connection_config() -> ConnectionConfig:
    """A complete, valid connection configuration."""
    return ConnectionConfig(
        host="203.0.113.10",
        rcon_port=28016,
        password="s3cret",
        server_name="Test Server",
    )


@pytest.fixture
def transports() -> TransportFactory:
    """Transport factory that records every FakeTransport it creates."""
    return TransportFactory()


@pytest.fixture
def fake_geo() -> FakeGeo:
    """Geo lookup that resolves everything to France unless told otherwise."""
    return FakeGeo()
