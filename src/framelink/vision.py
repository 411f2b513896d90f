"""Vision API client and the bounded frame work queue."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Literal

import httpx

from framelink.common.errors import QueueFull, VisionApiError
from framelink.common.events import Event, EventBus
from framelink.common.logging import get_logger
from framelink.config import VisionConfig


class VisionClient:
    """Posts JPEG frames to a vision endpoint as multipart uploads."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("vision.client")

    async def process_image(self, image: bytes, filename: str = "image.jpg") -> str:
        """Send one image and return the response body.

        Raises:
            VisionApiError: No endpoint is configured, the request failed or
                the endpoint answered with a non-200 status.
        """
        if not self.endpoint:
            raise VisionApiError("No vision API endpoint configured")

        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.endpoint,
                    files={"image": (filename, image, "image/jpeg")},
                )
        except httpx.HTTPError as e:
            raise VisionApiError(f"Vision API request failed: {e}") from e

        if response.status_code != 200:
            raise VisionApiError(
                f"Vision API returned status {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        self.logger.info(
            "vision_response",
            latency_ms=int((time.time() - start_time) * 1000),
            size=len(response.text),
        )
        return response.text


@dataclass
class QueuedFrame:
    data: bytes
    queued_at: float = field(default_factory=time.monotonic)


class FrameQueue:
    """Bounded frame queue with an explicit overflow policy.

    ``drop_oldest`` evicts the oldest frame to make room; ``reject_new``
    raises ``QueueFull``.
    """

    def __init__(self, maxsize: int = 10, overflow: Literal["drop_oldest", "reject_new"] = "drop_oldest") -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self.overflow = overflow
        self.dropped = 0
        self._frames: deque[QueuedFrame] = deque()
        self._changed = asyncio.Condition()

    def __len__(self) -> int:
        return len(self._frames)

    def full(self) -> bool:
        return len(self._frames) >= self.maxsize

    async def put(self, data: bytes) -> None:
        async with self._changed:
            if self.full():
                if self.overflow == "reject_new":
                    self.dropped += 1
                    raise QueueFull(f"Frame queue full ({self.maxsize} frames)")
                self._frames.popleft()
                self.dropped += 1
            self._frames.append(QueuedFrame(data))
            self._changed.notify_all()

    async def wait_for_frames(self, count: int) -> None:
        async with self._changed:
            await self._changed.wait_for(lambda: len(self._frames) >= count)

    def drain(self) -> list[QueuedFrame]:
        frames = list(self._frames)
        self._frames.clear()
        return frames


class VisionWorker:
    """Sends batches of queued frames to the vision API.

    Once ``frames_to_queue`` frames are buffered, the whole batch is taken
    off the queue and only its newest frame is sent. Results are published
    on ``vision.result``; failures on ``vision.error``.
    """

    def __init__(
        self,
        client: VisionClient,
        config: VisionConfig | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config or VisionConfig()
        self.client = client
        self.event_bus = event_bus or EventBus()
        self.queue = FrameQueue(self.config.queue_size, self.config.overflow)
        self.batch_size = max(1, min(self.config.frames_to_queue, self.config.queue_size))
        self.processed = 0
        self._task: asyncio.Task | None = None
        self.logger = get_logger("vision.worker")

    @classmethod
    def from_config(cls, config: VisionConfig, event_bus: EventBus | None = None) -> "VisionWorker":
        return cls(VisionClient(config.api_endpoint, config.timeout), config, event_bus)

    async def submit(self, frame: bytes) -> bool:
        """Queue a frame for processing.

        Returns:
            False if frame processing is disabled and the frame was ignored.
        """
        if not self.config.process_frames:
            self.logger.debug("frame_ignored", reason="processing disabled")
            return False
        await self.queue.put(frame)
        return True

    async def process_batch(self) -> str | None:
        """Send the newest buffered frame now and clear the queue."""
        frames = self.queue.drain()
        if not frames:
            return None
        self.logger.info("processing_batch", frames=len(frames))
        try:
            text = await self.client.process_image(frames[-1].data)
        except VisionApiError as e:
            self.logger.error("vision_request_failed", error=str(e), status_code=e.status_code)
            await self.event_bus.publish(
                Event(
                    topic="vision.error",
                    data={"error": str(e), "status_code": e.status_code},
                    source="vision",
                )
            )
            raise
        self.processed += 1
        await self.event_bus.publish(Event(topic="vision.result", data={"text": text}, source="vision"))
        return text

    async def _run(self) -> None:
        while True:
            await self.queue.wait_for_frames(self.batch_size)
            try:
                await self.process_batch()
            except VisionApiError:
                # Already reported; keep draining.
                continue

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
