"""Tests for the operation serializer."""

import asyncio

import pytest

from framelink.common.errors import (
    ConnectionLost,
    OperationConflict,
    OperationFailed,
    OperationTimeout,
    PayloadTooLarge,
    WriteFailed,
)
from framelink.serializer import OperationSerializer


@pytest.fixture
def sleep(recording_sleep):
    return recording_sleep


class TestMutualExclusion:
    """At most one operation is active."""

    @pytest.mark.asyncio
    async def test_concurrent_operations_never_overlap(self):
        serializer = OperationSerializer(timeout=5)
        windows: list[tuple[str, str]] = []
        active = 0
        max_active = 0

        def make(name: str):
            async def op():
                nonlocal active, max_active
                active += 1
                max_active = max(max_active, active)
                windows.append(("start", name))
                await asyncio.sleep(0.01)
                windows.append(("end", name))
                active -= 1
                return name

            return op

        results = await asyncio.gather(*(serializer.run(make(f"op{i}"), f"op{i}") for i in range(5)))

        assert results == [f"op{i}" for i in range(5)]
        assert max_active == 1
        # Every start is immediately followed by its own end.
        for i in range(0, len(windows), 2):
            assert windows[i][0] == "start"
            assert windows[i + 1] == ("end", windows[i][1])

    @pytest.mark.asyncio
    async def test_queue_policy_is_fifo(self):
        serializer = OperationSerializer()
        order = []

        async def op(i):
            order.append(i)

        await asyncio.gather(*(serializer.run(lambda i=i: op(i), "op") for i in range(4)))

        assert order == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_reject_policy(self):
        serializer = OperationSerializer(conflict_policy="reject")
        release = asyncio.Event()

        async def slow():
            await release.wait()

        first = asyncio.create_task(serializer.run(slow, "slow"))
        await asyncio.sleep(0)
        assert serializer.busy
        assert serializer.pending.name == "slow"

        with pytest.raises(OperationConflict):
            await serializer.run(slow, "second")

        release.set()
        await first
        assert not serializer.busy

    @pytest.mark.asyncio
    async def test_nested_run_does_not_deadlock(self):
        serializer = OperationSerializer(timeout=1)

        async def inner():
            return "inner"

        async def outer():
            return await serializer.run(inner, "inner")

        assert await serializer.run(outer, "outer") == "inner"


class TestTimeoutAndRetry:
    """Per-attempt time bound and retry policy."""

    @pytest.mark.asyncio
    async def test_timeout_retried_then_surfaced(self, sleep):
        checks = []

        async def ensure_ready():
            checks.append(True)

        serializer = OperationSerializer(
            timeout=0.01,
            max_attempts=3,
            retry_delay=2.0,
            ensure_ready=ensure_ready,
            sleep=sleep,
        )
        calls = 0

        async def hang():
            nonlocal calls
            calls += 1
            await asyncio.sleep(10)

        with pytest.raises(OperationFailed) as exc_info:
            await serializer.run(hang, "hang")

        assert calls == 3
        assert sleep.delays == [2.0, 2.0]
        assert len(checks) == 2
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, OperationTimeout)
        assert isinstance(exc_info.value.__cause__, OperationTimeout)
        assert serializer.health.failed == 3

    @pytest.mark.asyncio
    async def test_retry_succeeds(self, sleep):
        serializer = OperationSerializer(max_attempts=3, retry_delay=5.0, sleep=sleep)
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts < 2:
                raise WriteFailed("gatt error")
            return "ok"

        assert await serializer.run(flaky, "flaky") == "ok"
        assert sleep.delays == [5.0]
        assert serializer.health.successful == 1
        assert serializer.health.failed == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self, sleep):
        serializer = OperationSerializer(max_attempts=3, sleep=sleep)

        async def too_big():
            raise PayloadTooLarge("too big")

        with pytest.raises(PayloadTooLarge):
            await serializer.run(too_big, "too_big")
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, sleep):
        serializer = OperationSerializer(timeout=0.01, max_attempts=1, sleep=sleep)

        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(OperationFailed):
            await serializer.run(hang, "hang")

        async def quick():
            return 1

        assert await serializer.run(quick, "quick") == 1

    @pytest.mark.asyncio
    async def test_per_call_overrides(self, sleep):
        serializer = OperationSerializer(timeout=10, max_attempts=5, sleep=sleep)

        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(OperationFailed) as exc_info:
            await serializer.run(hang, "hang", timeout=0.01, max_attempts=1)
        assert exc_info.value.attempts == 1


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_fails_active_with_connection_lost(self, sleep):
        serializer = OperationSerializer(timeout=5, max_attempts=3, sleep=sleep)
        started = asyncio.Event()

        async def wait_forever():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(serializer.run(wait_forever, "capture"))
        await started.wait()

        assert serializer.abort_active(ConnectionLost("link lost"))

        with pytest.raises(ConnectionLost):
            await task
        assert sleep.delays == []
        assert not serializer.busy

    def test_abort_without_active_operation(self):
        assert OperationSerializer().abort_active(ConnectionLost("x")) is False
