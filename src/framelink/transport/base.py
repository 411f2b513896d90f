"""Transport interfaces.

The transport is a thin capability boundary over the platform BLE stack:
scan, connect, bond, MTU exchange, service discovery, write and a stream of
raw notifications. It carries no protocol knowledge.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol


@dataclass
class DiscoveredPeripheral:
    """One advertisement seen while scanning."""

    id: str
    name: str | None
    rssi: int
    service_uuids: list[str] = field(default_factory=list)
    native: Any = field(default=None, repr=False, compare=False)


_CLOSED = object()


class LinkHandle:
    """Live association with one peripheral.

    Owned by the session manager; other components only read ``mtu`` and
    ``connected``. Inbound notifications are buffered on an unbounded queue in
    arrival order until the session drains them.
    """

    def __init__(self, peripheral_id: str, native: Any = None) -> None:
        self.peripheral_id = peripheral_id
        self.native = native
        self.mtu = 23
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._disconnected = asyncio.Event()
        self._on_disconnect: list[Callable[[], None]] = []

    @property
    def connected(self) -> bool:
        return not self._disconnected.is_set()

    def add_disconnect_callback(self, callback: Callable[[], None]) -> None:
        self._on_disconnect.append(callback)

    def push(self, data: bytes) -> None:
        """Queue one notification payload (called from the stack's callback)."""
        if self.connected:
            self._queue.put_nowait(bytes(data))

    def mark_disconnected(self) -> None:
        """Record link loss; ends the notification stream and fires callbacks once."""
        if self._disconnected.is_set():
            return
        self._disconnected.set()
        self._queue.put_nowait(_CLOSED)
        for callback in self._on_disconnect:
            callback()

    async def wait_disconnected(self) -> None:
        await self._disconnected.wait()

    async def notifications(self) -> AsyncIterator[bytes]:
        """Yield notification payloads until the link goes down."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class Transport(Protocol):
    """Platform BLE capability used by the session manager."""

    def scan(
        self,
        service_uuids: list[str],
        timeout: float,
    ) -> AsyncIterator[DiscoveredPeripheral]:
        """Yield peripherals advertising one of the services until timeout."""
        ...

    async def connect(self, peripheral: DiscoveredPeripheral, timeout: float) -> LinkHandle:
        """Connect. Raises ConnectTimeout or ConnectRejected."""
        ...

    async def bond(self, handle: LinkHandle, timeout: float) -> bool:
        """Pair with the peripheral. Returns False or raises BondingFailed on failure."""
        ...

    async def negotiate_mtu(self, handle: LinkHandle, requested: int) -> int:
        """Exchange MTU. Returns the effective MTU or raises MtuNegotiationFailed."""
        ...

    async def discover_services(
        self,
        handle: LinkHandle,
        service_uuid: str,
        tx_char_uuid: str,
        rx_char_uuid: str,
    ) -> None:
        """Resolve characteristics and enable notifications.

        Raises ServiceDiscoveryFailed.
        """
        ...

    async def write(self, handle: LinkHandle, data: bytes, *, await_ack: bool = True) -> None:
        """Write one packet to the TX characteristic. Raises WriteFailed."""
        ...

    async def disconnect(self, handle: LinkHandle) -> None:
        """Tear down the link. Never raises."""
        ...
