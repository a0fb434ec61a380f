"""
Pytest configuration and shared fixtures.

The playback tests drive sessions through in-memory stand-ins for the media element and the
two adaptive engines. Proxy tests swap the outbound httpx client for one backed by
``httpx.MockTransport``. Optional overrides are read from a local .env file.
"""

from pathlib import Path

import httpx
import pytest
from dotenv import load_dotenv

from fakes import FakeEngines, FakeMediaElement
from streamrelay.configs import PlayerSettings

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def media():
    return FakeMediaElement()


@pytest.fixture
def engines():
    return FakeEngines()


@pytest.fixture
def player_settings():
    return PlayerSettings(
        load_timeout=0.2,
        max_network_retries=3,
        retry_delay=0.01,
        controls_hide_delay=0.05,
        frame_interval=0.001,
        viewport_debounce=0.02,
    )


@pytest.fixture
def mock_upstream(monkeypatch):
    """
    Route the proxy's outbound requests to a handler.

    Usage:
        def test_something(mock_upstream):
            requests = mock_upstream(lambda request: httpx.Response(200, content=b"data"))
    """

    def install(handler):
        seen = []

        def recording_handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        def create_client(**kwargs):
            return httpx.AsyncClient(transport=httpx.MockTransport(recording_handler), follow_redirects=True)

        monkeypatch.setattr("streamrelay.handlers.create_httpx_client", create_client)
        return seen

    return install
