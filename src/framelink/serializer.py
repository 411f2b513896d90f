"""Operation serializer.

The frameside interpreter reassembles one request at a time, so at most one
request/response exchange may be in flight. Every exchange with the glasses
runs through ``OperationSerializer.run`` which adds the time bound, the retry
policy and the liveness check between attempts.
"""

from __future__ import annotations

import asyncio
import contextvars
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, TypeVar

from framelink.common.errors import (
    FrameLinkError,
    OperationConflict,
    OperationFailed,
    OperationTimeout,
)
from framelink.common.health import LinkHealth
from framelink.common.logging import get_logger
from framelink.config import OperationConfig

T = TypeVar("T")

# Set while an operation body runs so nested calls join it instead of deadlocking.
_active_serializer: contextvars.ContextVar["OperationSerializer | None"] = contextvars.ContextVar(
    "framelink_active_serializer", default=None
)


@dataclass
class PendingOperation:
    """The one request/response exchange currently admitted."""

    operation_id: str
    name: str
    started_at: float
    timeout: float
    retries_remaining: int


class OperationSerializer:
    """Admits one operation at a time with timeout and retry."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        conflict_policy: Literal["queue", "reject"] = "queue",
        ensure_ready: Callable[[], Awaitable[None]] | None = None,
        health: LinkHealth | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.conflict_policy = conflict_policy
        self.health = health or LinkHealth()
        self._ensure_ready = ensure_ready
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._pending: PendingOperation | None = None
        self._active_task: asyncio.Future | None = None
        self._abort_error: BaseException | None = None
        self.logger = get_logger("serializer")

    @classmethod
    def from_config(cls, config: OperationConfig, **kwargs) -> "OperationSerializer":
        return cls(
            timeout=config.timeout,
            max_attempts=config.max_attempts,
            retry_delay=config.retry_delay,
            conflict_policy=config.conflict_policy,
            **kwargs,
        )

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def pending(self) -> PendingOperation | None:
        return self._pending

    def in_operation(self) -> bool:
        """True when called from inside an operation body of this serializer."""
        return _active_serializer.get() is self

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        *,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> T:
        """Run an exchange exclusively.

        Args:
            operation: Zero-argument coroutine function performing the exchange.
            name: Operation name for logs and errors.
            timeout: Per-attempt bound (defaults to the serializer timeout).
            max_attempts: Total attempts (defaults to the serializer policy).

        Returns:
            The operation result.

        Raises:
            OperationConflict: Another operation is active and the policy rejects.
            OperationFailed: Every attempt failed with a retryable error.
        """
        if self.in_operation():
            return await operation()

        if self.conflict_policy == "reject" and self._lock.locked():
            active = self._pending.name if self._pending else "another operation"
            raise OperationConflict(f"Cannot start {name} while {active} is in progress")

        async with self._lock:
            return await self._run_exclusive(
                operation,
                name,
                self.timeout if timeout is None else timeout,
                self.max_attempts if max_attempts is None else max(1, max_attempts),
            )

    async def _run_exclusive(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        timeout: float,
        attempts: int,
    ) -> T:
        last_error: FrameLinkError | None = None

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await self._sleep(self.retry_delay)
                if self._ensure_ready is not None:
                    await self._ensure_ready()

            self._pending = PendingOperation(
                operation_id=uuid.uuid4().hex[:8],
                name=name,
                started_at=time.monotonic(),
                timeout=timeout,
                retries_remaining=attempts - attempt,
            )
            started = time.monotonic()
            try:
                result = await self._attempt(operation, name, timeout)
            except FrameLinkError as e:
                self.health.record_failure()
                last_error = e
                if not e.retryable:
                    raise
                self.logger.warning(
                    "operation_attempt_failed",
                    operation=name,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                )
                continue
            except Exception:
                self.health.record_failure()
                raise
            finally:
                self._pending = None

            self.health.record_success((time.monotonic() - started) * 1000)
            return result

        self.logger.error("operation_failed", operation=name, attempts=attempts, error=str(last_error))
        raise OperationFailed(
            f"{name} failed after {attempts} attempts: {last_error}",
            operation=name,
            attempts=attempts,
            last_error=last_error,
        ) from last_error

    async def _attempt(self, operation: Callable[[], Awaitable[T]], name: str, timeout: float) -> T:
        token = _active_serializer.set(self)
        try:
            task = asyncio.ensure_future(asyncio.wait_for(operation(), timeout=timeout))
        finally:
            _active_serializer.reset(token)

        self._active_task = task
        self._abort_error = None
        try:
            return await task
        except asyncio.TimeoutError as e:
            raise OperationTimeout(f"{name} timed out after {timeout}s") from e
        except asyncio.CancelledError:
            abort_error = self._abort_error
            if abort_error is not None:
                raise abort_error from None
            raise
        finally:
            self._active_task = None
            self._abort_error = None

    def abort_active(self, error: BaseException) -> bool:
        """Fail the in-flight operation with ``error`` (e.g. link loss).

        Returns:
            True if an operation was aborted.
        """
        task = self._active_task
        if task is None or task.done():
            return False
        self._abort_error = error
        task.cancel()
        self.logger.warning(
            "operation_aborted",
            operation=self._pending.name if self._pending else None,
            error=str(error),
        )
        return True
