"""Tests for the vision client and frame queue."""

import asyncio

import httpx
import pytest

from framelink.common.errors import QueueFull, VisionApiError
from framelink.common.events import Event, EventBus
from framelink.config import VisionConfig
from framelink.vision import FrameQueue, VisionClient, VisionWorker

ENDPOINT = "http://vision.local/process"


def vision_transport(requests: list[httpx.Request], status_code: int = 200, text: str = "a desk with a laptop"):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, text=text)

    return httpx.MockTransport(handler)


class TestFrameQueue:
    """Bounded queue overflow policies."""

    @pytest.mark.asyncio
    async def test_drop_oldest(self):
        queue = FrameQueue(maxsize=2, overflow="drop_oldest")

        for frame in (b"one", b"two", b"three"):
            await queue.put(frame)

        assert len(queue) == 2
        assert queue.dropped == 1
        assert [f.data for f in queue.drain()] == [b"two", b"three"]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_reject_new(self):
        queue = FrameQueue(maxsize=2, overflow="reject_new")
        await queue.put(b"one")
        await queue.put(b"two")

        with pytest.raises(QueueFull):
            await queue.put(b"three")

        assert queue.full()
        assert queue.dropped == 1
        assert [f.data for f in queue.drain()] == [b"one", b"two"]

    @pytest.mark.asyncio
    async def test_never_exceeds_capacity(self):
        queue = FrameQueue(maxsize=3)

        for i in range(20):
            await queue.put(bytes([i]))
            assert len(queue) <= 3

    @pytest.mark.asyncio
    async def test_wait_for_frames(self):
        queue = FrameQueue(maxsize=5)
        waiter = asyncio.create_task(queue.wait_for_frames(2))

        await queue.put(b"a")
        await asyncio.sleep(0)
        assert not waiter.done()

        await queue.put(b"b")
        await asyncio.wait_for(waiter, timeout=1)

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            FrameQueue(maxsize=0)


class TestVisionClient:
    """Multipart uploads to the vision endpoint."""

    @pytest.mark.asyncio
    async def test_posts_image_field(self, mock_image_bytes: bytes):
        requests: list[httpx.Request] = []
        client = VisionClient(ENDPOINT, transport=vision_transport(requests))

        text = await client.process_image(mock_image_bytes)

        assert text == "a desk with a laptop"
        assert len(requests) == 1
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == ENDPOINT
        assert request.headers["content-type"].startswith("multipart/form-data")
        body = request.read()
        assert b'name="image"; filename="image.jpg"' in body
        assert b"Content-Type: image/jpeg" in body
        assert mock_image_bytes in body

    @pytest.mark.asyncio
    async def test_non_200_raises(self, mock_image_bytes: bytes):
        client = VisionClient(ENDPOINT, transport=vision_transport([], status_code=503, text="overloaded"))

        with pytest.raises(VisionApiError) as exc_info:
            await client.process_image(mock_image_bytes)

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_network_error_raises(self, mock_image_bytes: bytes):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = VisionClient(ENDPOINT, transport=httpx.MockTransport(handler))

        with pytest.raises(VisionApiError) as exc_info:
            await client.process_image(mock_image_bytes)

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_no_endpoint(self):
        with pytest.raises(VisionApiError):
            await VisionClient("").process_image(b"\xff\xd8")


class TestVisionWorker:
    """Batching queued frames."""

    def make_worker(self, requests, event_bus, status_code=200, **overrides) -> VisionWorker:
        config = VisionConfig(api_endpoint=ENDPOINT, process_frames=True, **overrides)
        client = VisionClient(ENDPOINT, transport=vision_transport(requests, status_code=status_code))
        return VisionWorker(client, config, event_bus)

    @pytest.mark.asyncio
    async def test_submit_ignored_when_disabled(self, event_bus: EventBus):
        worker = VisionWorker(VisionClient(ENDPOINT), VisionConfig(process_frames=False), event_bus)

        assert await worker.submit(b"frame") is False
        assert len(worker.queue) == 0

    @pytest.mark.asyncio
    async def test_batch_sends_newest_frame(self, event_bus: EventBus):
        requests: list[httpx.Request] = []
        worker = self.make_worker(requests, event_bus, frames_to_queue=3)
        results: list[Event] = []

        async def on_result(event: Event):
            results.append(event)

        event_bus.subscribe("vision.result", on_result)
        worker.start()
        try:
            for frame in (b"\xff\xd8first", b"\xff\xd8second", b"\xff\xd8newest"):
                await worker.submit(frame)
            for _ in range(50):
                if results:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.stop()

        assert len(requests) == 1
        assert b"\xff\xd8newest" in requests[0].read()
        assert b"first" not in requests[0].read()
        assert results[0].data == {"text": "a desk with a laptop"}
        assert worker.processed == 1
        assert len(worker.queue) == 0

    @pytest.mark.asyncio
    async def test_batch_size_bounded_by_queue(self, event_bus: EventBus):
        worker = self.make_worker([], event_bus, frames_to_queue=50, queue_size=4)

        assert worker.batch_size == 4

    @pytest.mark.asyncio
    async def test_failure_published(self, event_bus: EventBus):
        worker = self.make_worker([], event_bus, status_code=500)
        await worker.submit(b"\xff\xd8")

        with pytest.raises(VisionApiError):
            await worker.process_batch()

        error = event_bus.get_history("vision.error")[0]
        assert error.data["status_code"] == 500

    @pytest.mark.asyncio
    async def test_empty_batch(self, event_bus: EventBus):
        worker = self.make_worker([], event_bus)

        assert await worker.process_batch() is None
