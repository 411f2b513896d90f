"""Tap-driven vision app.

Triple tap captures a photo, sends it to the vision API and shows the answer
on the display. Single tap pages forward, double tap pages back.
"""

from __future__ import annotations

import textwrap

from framelink.camera import CapturedPhoto, FrameCamera
from framelink.common.errors import FrameLinkError
from framelink.common.events import Event, EventBus
from framelink.common.service import BaseService
from framelink.config import Config
from framelink.protocol.messages import TxCode, TxPlainText
from framelink.session import FrameSession
from framelink.taps import MultiTap, TapGrouper
from framelink.transport.base import Transport
from framelink.vision import VisionClient, VisionWorker

INSTRUCTIONS = "Tap 3x to describe\n1x next page\n2x previous page"


def paginate(text: str, chars_per_line: int, lines_per_page: int) -> list[str]:
    """Wrap text for the display and split it into pages."""
    lines: list[str] = []
    for paragraph in text.splitlines():
        lines.extend(textwrap.wrap(paragraph, chars_per_line) or [""])
    while lines and not lines[-1]:
        lines.pop()
    if not lines:
        return []
    return ["\n".join(lines[i : i + lines_per_page]) for i in range(0, len(lines), lines_per_page)]


class VisionAppService(BaseService):
    """Vision assistant running on the glasses."""

    def __init__(
        self,
        config: Config | None = None,
        mock_mode: bool = False,
        transport: Transport | None = None,
        vision_client: VisionClient | None = None,
        configure_logging: bool = True,
    ) -> None:
        super().__init__("vision_app", config, mock_mode, configure_logging)

        if transport is None:
            if self.mock_mode:
                from framelink.transport.mock import MockTransport

                transport = MockTransport()
            else:
                from framelink.transport.ble import BleakTransport

                transport = BleakTransport()

        vision = self.config.vision
        self.event_bus = EventBus()
        self.session = FrameSession(transport, self.config, self.event_bus)
        self.camera = FrameCamera(self.session)
        self.vision = vision_client or VisionClient(vision.api_endpoint, vision.timeout)
        self.worker = VisionWorker(self.vision, vision, self.event_bus) if vision.process_frames else None
        self.taps = TapGrouper(vision.tap_threshold, self.on_multi_tap)

        self.pages: list[str] = []
        self.page = 0
        self.last_photo: CapturedPhoto | None = None
        self._capturing = False
        self._unsubscribe = None

    async def setup(self) -> None:
        await self.session.connect()
        self.taps.attach(self.event_bus)
        self._unsubscribe = self.event_bus.subscribe("vision.result", self._on_vision_result)
        if self.worker is not None:
            self.worker.start()
        await self.session.send_message(TxCode(value=1))
        await self.show(INSTRUCTIONS)

    async def teardown(self) -> None:
        await self.taps.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.worker is not None:
            await self.worker.stop()
        if self.session.is_ready:
            try:
                await self.session.send_message(TxCode(value=0))
            except FrameLinkError as e:
                self.logger.warning("tap_unsubscribe_failed", error=str(e))
        await self.session.disconnect()

    async def show(self, text: str) -> None:
        await self.session.send_message(TxPlainText(text))

    async def on_multi_tap(self, tap: MultiTap) -> None:
        self.logger.info("multi_tap", count=tap.count)
        try:
            if tap.count >= 3:
                await self.capture_and_describe()
            elif tap.count == 2:
                await self.previous_page()
            else:
                await self.next_page()
        except FrameLinkError as e:
            self.logger.error("tap_action_failed", taps=tap.count, error=str(e))

    async def capture_and_describe(self) -> str | None:
        """Capture a photo and describe it.

        Returns:
            The vision API answer, or None if the capture was dropped, failed
            or was handed to the frame queue.
        """
        if self._capturing:
            self.logger.info("capture_dropped", reason="capture in progress")
            return None

        self._capturing = True
        try:
            await self.show("Capturing...")
            self.last_photo = await self.camera.capture()

            if self.worker is not None:
                await self.worker.submit(self.last_photo.data)
                return None

            await self.show("Analyzing...")
            text = await self.vision.process_image(self.last_photo.data)
            await self.event_bus.publish(Event(topic="vision.result", data={"text": text}, source="vision_app"))
            return text
        except FrameLinkError as e:
            self.logger.error("describe_failed", error=str(e))
            if self.session.is_ready:
                await self.show(f"Error: {e}")
            return None
        finally:
            self._capturing = False

    async def _on_vision_result(self, event: Event) -> None:
        vision = self.config.vision
        self.pages = paginate(event.data["text"], vision.chars_per_line, vision.lines_per_page)
        self.page = 0
        await self.show_page()

    async def show_page(self) -> None:
        if not self.pages:
            await self.show("No answer")
            return
        await self.show(self.pages[self.page])

    async def next_page(self) -> None:
        if self.page + 1 < len(self.pages):
            self.page += 1
        await self.show_page()

    async def previous_page(self) -> None:
        if self.page > 0:
            self.page -= 1
        await self.show_page()
