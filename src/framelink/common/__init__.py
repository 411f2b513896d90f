"""Common utilities for FrameLink."""

from framelink.common.logging import get_logger, setup_logging
from framelink.common.service import BaseService, ServiceState
from framelink.common.health import HealthStatus, LinkHealth
from framelink.common.events import EventBus, Event

__all__ = [
    "get_logger",
    "setup_logging",
    "BaseService",
    "ServiceState",
    "HealthStatus",
    "LinkHealth",
    "EventBus",
    "Event",
]
