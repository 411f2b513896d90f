"""Transport adapters."""

from framelink.transport.base import DiscoveredPeripheral, LinkHandle, Transport

__all__ = ["DiscoveredPeripheral", "LinkHandle", "Transport"]
