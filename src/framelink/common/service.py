"""Base class for long-running FrameLink services."""

from __future__ import annotations

import asyncio
import signal
from abc import ABC, abstractmethod
from enum import Enum

from framelink.common.health import HealthStatus
from framelink.common.logging import get_logger, setup_logging
from framelink.config import Config, load_config


class ServiceState(Enum):
    """Service state enum."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class BaseService(ABC):
    """Base class for services that hold a session open until shutdown.

    Provides common functionality:
    - Logging and configuration
    - Setup/teardown around a wait for shutdown
    - Signal handling
    """

    def __init__(
        self,
        name: str,
        config: Config | None = None,
        mock_mode: bool = False,
        configure_logging: bool = True,
    ) -> None:
        """Initialize the service.

        Args:
            name: Service name.
            config: Configuration object. Loaded from file if None.
            mock_mode: Use the in-memory glasses.
            configure_logging: Set up structlog for this process.
        """
        self.name = name
        self.config = config or load_config()
        self.mock_mode = mock_mode or self.config.mock_mode

        if configure_logging:
            setup_logging(
                level=self.config.device.log_level,
                json_output=self.config.device.mode == "production",
                service_name=name,
            )
        self.logger = get_logger(name, service=name)

        self._state = ServiceState.STOPPED
        self._shutdown_event = asyncio.Event()

    @property
    def state(self) -> ServiceState:
        """Get current service state."""
        return self._state

    @abstractmethod
    async def setup(self) -> None:
        """Acquire service resources (connect, subscribe)."""
        pass

    @abstractmethod
    async def teardown(self) -> None:
        """Release service resources."""
        pass

    async def check_health(self) -> HealthStatus:
        """Check service health.

        Override to add service-specific health checks.
        """
        if self._state == ServiceState.RUNNING:
            return HealthStatus.HEALTHY
        elif self._state == ServiceState.ERROR:
            return HealthStatus.UNHEALTHY
        else:
            return HealthStatus.DEGRADED

    async def start(self) -> None:
        """Start the service and run until shutdown is requested."""
        self.logger.info("starting_service", mock_mode=self.mock_mode)
        self._state = ServiceState.STARTING

        try:
            await self.setup()

            self._state = ServiceState.RUNNING
            self.logger.info("service_started")

            await self._shutdown_event.wait()

        except Exception as e:
            self._state = ServiceState.ERROR
            self.logger.exception("service_start_failed", error=str(e))
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if self._state in (ServiceState.STOPPING, ServiceState.STOPPED):
            return

        self.logger.info("stopping_service")
        failed = self._state == ServiceState.ERROR
        self._state = ServiceState.STOPPING

        try:
            await self.teardown()
            self._state = ServiceState.ERROR if failed else ServiceState.STOPPED
            self.logger.info("service_stopped")

        except Exception as e:
            self._state = ServiceState.ERROR
            self.logger.exception("service_stop_failed", error=str(e))

    def shutdown(self) -> None:
        """Signal the service to shutdown."""
        self._shutdown_event.set()

    def run(self) -> None:
        """Run the service (blocking).

        Sets up signal handlers and runs the async event loop.
        """
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

        try:
            loop.run_until_complete(self.start())
        finally:
            loop.close()
