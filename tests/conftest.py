"""Pytest configuration and fixtures for FrameLink tests."""

from __future__ import annotations

import io

import pytest
import structlog
from PIL import Image

from framelink.common.events import EventBus
from framelink.config import Config
from framelink.session import FrameSession
from framelink.transport.mock import MockFrame, MockTransport


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options."""
    parser.addoption(
        "--hil",
        action="store_true",
        default=False,
        help="Run hardware-in-the-loop tests (requires Frame glasses in range)",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure test markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "hil: Hardware-in-the-loop tests")


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Skip HIL tests unless --hil is set."""
    if not config.getoption("--hil"):
        skip_hil = pytest.mark.skip(reason="Need --hil option to run")
        for item in items:
            if "hil" in item.keywords:
                item.add_marker(skip_hil)


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo global logging config (e.g. from the CLI) so it can't outlive a test's captured stderr."""
    yield
    structlog.reset_defaults()


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def config() -> Config:
    """Test configuration with no real waiting and no background timers."""
    cfg = Config()
    cfg.mock_mode = True
    cfg.device.mode = "development"
    cfg.device.log_level = "DEBUG"
    cfg.ble.stabilize_delay = 0
    cfg.heartbeat.enabled = False
    cfg.heartbeat.probe_timeout = 1.0
    cfg.operation.timeout = 2.0
    cfg.camera.photo_timeout = 2.0
    cfg.vision.tap_threshold = 0.02
    return cfg


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def mock_frame() -> MockFrame:
    return MockFrame()


@pytest.fixture
def mock_transport(mock_frame: MockFrame) -> MockTransport:
    return MockTransport([mock_frame])


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def session(
    mock_transport: MockTransport,
    config: Config,
    event_bus: EventBus,
    recording_sleep: RecordingSleep,
) -> FrameSession:
    """Session over the in-memory glasses (not yet connected)."""
    return FrameSession(mock_transport, config, event_bus, sleep=recording_sleep)


@pytest.fixture
async def connected_session(session: FrameSession):
    """Session connected to the in-memory glasses."""
    await session.connect()
    yield session
    await session.disconnect()


@pytest.fixture
def mock_image_bytes() -> bytes:
    """Create mock JPEG image."""
    img = Image.new("RGB", (640, 480), color=(73, 109, 137))
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=85)
    return buffer.getvalue()
