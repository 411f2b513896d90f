"""Tests for the vision app."""

import pytest

from framelink.app import INSTRUCTIONS, VisionAppService, paginate
from framelink.common.events import Event
from framelink.common.service import ServiceState
from framelink.config import Config
from framelink.taps import MultiTap
from framelink.transport.mock import MockFrame, MockTransport
from framelink.vision import VisionClient


class TestPaginate:
    def test_wraps_and_splits(self):
        text = "one two three four five six seven eight nine ten"

        pages = paginate(text, chars_per_line=10, lines_per_page=2)

        assert pages == ["one two\nthree four", "five six\nseven", "eight nine\nten"]

    def test_keeps_paragraph_breaks(self):
        assert paginate("a\n\nb", chars_per_line=10, lines_per_page=5) == ["a\n\nb"]

    def test_empty(self):
        assert paginate("  \n", chars_per_line=10, lines_per_page=2) == []


@pytest.fixture
async def service(config: Config, mock_frame: MockFrame):
    svc = VisionAppService(
        config=config,
        mock_mode=True,
        transport=MockTransport([mock_frame]),
        vision_client=VisionClient(""),
        configure_logging=False,
    )
    await svc.setup()
    yield svc
    await svc.teardown()


class TestVisionAppService:
    """App behaviour against the in-memory glasses."""

    @pytest.mark.asyncio
    async def test_setup_subscribes_taps_and_shows_instructions(self, service, mock_frame: MockFrame):
        assert mock_frame.tap_subscribed
        assert mock_frame.display == [INSTRUCTIONS]

    @pytest.mark.asyncio
    async def test_teardown_unsubscribes(self, config: Config, mock_frame: MockFrame):
        svc = VisionAppService(
            config=config,
            transport=MockTransport([mock_frame]),
            configure_logging=False,
        )
        await svc.setup()
        await svc.teardown()

        assert not mock_frame.tap_subscribed
        assert not svc.session.is_ready

    @pytest.mark.asyncio
    async def test_result_paginated_and_navigated(self, service, mock_frame: MockFrame):
        service.config.vision.chars_per_line = 8
        service.config.vision.lines_per_page = 1
        await service.event_bus.publish(
            Event(topic="vision.result", data={"text": "first second third"}, source="test")
        )
        assert mock_frame.display[-1] == "first"

        await service.on_multi_tap(MultiTap(count=1))
        assert mock_frame.display[-1] == "second"
        await service.on_multi_tap(MultiTap(count=1))
        await service.on_multi_tap(MultiTap(count=1))
        assert mock_frame.display[-1] == "third"

        await service.on_multi_tap(MultiTap(count=2))
        assert mock_frame.display[-1] == "second"

    @pytest.mark.asyncio
    async def test_no_answer_page(self, service, mock_frame: MockFrame):
        await service.next_page()

        assert mock_frame.display[-1] == "No answer"

    @pytest.mark.asyncio
    async def test_vision_error_shown(self, service, mock_frame: MockFrame):
        """Test a missing endpoint is reported on the display."""
        assert await service.capture_and_describe() is None

        assert service.last_photo is not None
        assert mock_frame.display[-1].startswith("Error:")
        assert not service._capturing

    @pytest.mark.asyncio
    async def test_health(self, config: Config, mock_frame: MockFrame):
        svc = VisionAppService(config=config, transport=MockTransport([mock_frame]), configure_logging=False)

        assert svc.state == ServiceState.STOPPED
        assert (await svc.check_health()).value == "degraded"
