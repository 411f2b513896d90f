"""BLE GATT transport implementation over bleak."""

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from framelink.common.errors import (
    BondingFailed,
    ConnectRejected,
    ConnectTimeout,
    MtuNegotiationFailed,
    PermissionDenied,
    ServiceDiscoveryFailed,
    WriteFailed,
)
from framelink.common.logging import get_logger
from framelink.transport.base import DiscoveredPeripheral, LinkHandle

_PERMISSION_HINTS = ("notpermitted", "not permitted", "not authorized", "unauthorized", "permission")


def _is_permission_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(hint in text for hint in _PERMISSION_HINTS)


class BleakTransport:
    """Transport backed by the host Bluetooth stack via bleak."""

    def __init__(self) -> None:
        self.logger = get_logger("transport.ble")
        self._tx_char: dict[str, str] = {}
        self._rx_char: dict[str, str] = {}

    async def scan(
        self,
        service_uuids: list[str],
        timeout: float,
    ) -> AsyncIterator[DiscoveredPeripheral]:
        queue: asyncio.Queue[DiscoveredPeripheral] = asyncio.Queue()
        seen: set[str] = set()

        def _on_advertisement(device: BLEDevice, adv: AdvertisementData) -> None:
            if device.address in seen:
                return
            seen.add(device.address)
            queue.put_nowait(
                DiscoveredPeripheral(
                    id=device.address,
                    name=device.name or adv.local_name,
                    rssi=adv.rssi,
                    service_uuids=list(adv.service_uuids),
                    native=device,
                )
            )

        scanner = BleakScanner(detection_callback=_on_advertisement, service_uuids=service_uuids)
        try:
            await scanner.start()
        except BleakError as exc:
            if _is_permission_error(exc):
                raise PermissionDenied(f"Bluetooth scan not permitted: {exc}") from exc
            raise

        deadline = time.monotonic() + timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return
                try:
                    yield await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    return
        finally:
            await scanner.stop()

    async def connect(self, peripheral: DiscoveredPeripheral, timeout: float) -> LinkHandle:
        handle = LinkHandle(peripheral.id)

        def _on_disconnect(_: BleakClient) -> None:
            self.logger.info("ble_disconnected", peripheral_id=peripheral.id)
            handle.mark_disconnected()

        client = BleakClient(
            peripheral.native or peripheral.id,
            disconnected_callback=_on_disconnect,
            timeout=timeout,
        )
        handle.native = client

        try:
            await client.connect()
        except asyncio.TimeoutError as exc:
            raise ConnectTimeout(f"Connect to {peripheral.id} timed out after {timeout}s") from exc
        except BleakError as exc:
            if _is_permission_error(exc):
                raise PermissionDenied(f"Bluetooth connect not permitted: {exc}") from exc
            raise ConnectRejected(f"Connect to {peripheral.id} rejected: {exc}") from exc

        if not client.is_connected:
            raise ConnectRejected(f"BLE connect failed for {peripheral.id}")

        return handle

    async def bond(self, handle: LinkHandle, timeout: float) -> bool:
        client: BleakClient = handle.native
        try:
            return bool(await asyncio.wait_for(client.pair(), timeout=timeout))
        except asyncio.TimeoutError as exc:
            raise BondingFailed(f"Pairing timed out after {timeout}s") from exc
        except (BleakError, NotImplementedError) as exc:
            raise BondingFailed(f"Pairing failed: {exc}") from exc

    async def negotiate_mtu(self, handle: LinkHandle, requested: int) -> int:
        client: BleakClient = handle.native
        try:
            # BlueZ only learns the MTU after an explicit acquire. Private API:
            # BleakClientBlueZDBus._acquire_mtu (bleak 0.22); other backends
            # lack it and report mtu_size directly.
            acquire = getattr(client._backend, "_acquire_mtu", None)
            if acquire is not None:
                await acquire()
            mtu = client.mtu_size
        except (BleakError, AttributeError) as exc:
            raise MtuNegotiationFailed(f"MTU exchange failed: {exc}") from exc

        if not mtu:
            raise MtuNegotiationFailed("Stack reported no MTU")
        return min(int(mtu), requested)

    async def discover_services(
        self,
        handle: LinkHandle,
        service_uuid: str,
        tx_char_uuid: str,
        rx_char_uuid: str,
    ) -> None:
        client: BleakClient = handle.native
        service = client.services.get_service(service_uuid)
        if service is None:
            raise ServiceDiscoveryFailed(f"Service {service_uuid} not found on {handle.peripheral_id}")

        tx = service.get_characteristic(tx_char_uuid)
        rx = service.get_characteristic(rx_char_uuid)
        if tx is None or rx is None:
            raise ServiceDiscoveryFailed(f"TX/RX characteristics missing on {handle.peripheral_id}")

        def _on_notify(_: object, data: bytearray) -> None:
            handle.push(bytes(data))

        try:
            await client.start_notify(rx, _on_notify)
        except BleakError as exc:
            raise ServiceDiscoveryFailed(f"Enabling notifications failed: {exc}") from exc

        self._tx_char[handle.peripheral_id] = tx_char_uuid
        self._rx_char[handle.peripheral_id] = rx_char_uuid

    async def write(self, handle: LinkHandle, data: bytes, *, await_ack: bool = True) -> None:
        client: BleakClient = handle.native
        char = self._tx_char.get(handle.peripheral_id)
        if char is None:
            raise WriteFailed("Write before service discovery")
        try:
            await client.write_gatt_char(char, data, response=await_ack)
        except BleakError as exc:
            raise WriteFailed(f"BLE write failed: {exc}") from exc

    async def disconnect(self, handle: LinkHandle) -> None:
        client: BleakClient = handle.native
        rx = self._rx_char.pop(handle.peripheral_id, None)
        self._tx_char.pop(handle.peripheral_id, None)
        try:
            if rx and client.is_connected:
                await client.stop_notify(rx)
            await client.disconnect()
        except BleakError as exc:
            self.logger.warning("ble_disconnect_error", error=str(exc))
        finally:
            handle.mark_disconnected()
