"""In-memory transport and simulated glasses.

``MockFrame`` speaks the same wire protocol as the frameside app: it decodes
framed host messages, answers Lua ``print`` calls on the text channel and
streams photos back as flagged chunks. Used by the tests and ``--mock`` mode.
"""

from __future__ import annotations

import io
import re
import struct
from typing import AsyncIterator

from PIL import Image

from framelink.common.errors import (
    MtuNegotiationFailed,
    ServiceDiscoveryFailed,
    WriteFailed,
)
from framelink.common.logging import get_logger
from framelink.protocol.codec import (
    ATT_OVERHEAD,
    BREAK_SIGNAL,
    DATA_MARKER,
    RESET_SIGNAL,
    MessageDecoder,
)
from framelink.protocol.messages import (
    MessageType,
    TxAutoExpSettings,
    TxCaptureSettings,
    TxCode,
    TxManualExpSettings,
    TxPlainText,
)
from framelink.protocol.rx import InboundFlag
from framelink.transport.base import DiscoveredPeripheral, LinkHandle

FRAME_SERVICE_UUID = "7a230001-5475-a6a4-654c-8431f6ad49c4"

# JPEG quality used for each capture quality index.
JPEG_QUALITY = (10, 25, 50, 62, 75)

_PRINT_LITERAL = re.compile(r'print\("((?:[^"\\]|\\.)*)"\)\s*$')
_FILE_OPEN = re.compile(r'^f=frame\.file\.open\("((?:[^"\\]|\\.)*)","write"\)$')
_FILE_WRITE = re.compile(r'^f:write\("((?:[^"\\]|\\.)*)"\)$')


def _lua_unescape(text: str) -> str:
    return re.sub(
        r"\\(.)",
        lambda m: {"n": "\n", "r": "\r"}.get(m.group(1), m.group(1)),
        text,
    )


def make_jpeg(width: int = 512, height: int = 512, quality: int = 75, color: tuple = (73, 109, 137)) -> bytes:
    """Generate a solid colour JPEG."""
    img = Image.new("RGB", (width, height), color=color)
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


class MockFrame:
    """Simulated Frame glasses."""

    def __init__(
        self,
        peripheral_id: str = "F0:0D:00:00:00:01",
        name: str = "Frame 4F",
        rssi: int = -55,
        mtu: int = 247,
        battery: int = 87,
        length_prefixed_photos: bool = False,
        photo: bytes | None = None,
    ) -> None:
        self.peripheral_id = peripheral_id
        self.name = name
        self.rssi = rssi
        self.mtu = mtu
        self.battery = battery
        self.length_prefixed_photos = length_prefixed_photos
        self.photo = photo
        self.handle: LinkHandle | None = None
        self.silent = False
        self.send_auto_exp_result = True

        self.writes: list[bytes] = []
        self.messages: list[tuple[int, bytes]] = []
        self.scripts: list[str] = []
        self.signals: list[int] = []
        self.display: list[str] = []
        self.files: dict[str, str] = {}
        self.captures: list[TxCaptureSettings] = []
        self.auto_exposure: TxAutoExpSettings | None = None
        self.manual_exposure: TxManualExpSettings | None = None
        self.tap_subscribed = False
        self.imu_streaming = False

        self._decoder = MessageDecoder()
        self._open_file: str | None = None
        self.logger = get_logger("mock_frame", peripheral_id=peripheral_id)

    def advertisement(self) -> DiscoveredPeripheral:
        return DiscoveredPeripheral(
            id=self.peripheral_id,
            name=self.name,
            rssi=self.rssi,
            service_uuids=[FRAME_SERVICE_UUID],
        )

    @property
    def notify_size(self) -> int:
        mtu = self.handle.mtu if self.handle else self.mtu
        return mtu - ATT_OVERHEAD

    # Inbound (host writes)

    def receive(self, data: bytes) -> None:
        self.writes.append(data)
        if len(data) == 1 and data[0] in (BREAK_SIGNAL, RESET_SIGNAL):
            self.signals.append(data[0])
            return
        if data and data[0] == DATA_MARKER:
            message = self._decoder.feed(data)
            if message is not None:
                self._on_message(*message)
            return
        self._on_lua(data.decode("utf-8"))

    def _on_lua(self, source: str) -> None:
        self.scripts.append(source)

        opened = _FILE_OPEN.match(source)
        if opened:
            self._open_file = _lua_unescape(opened.group(1))
            self.files[self._open_file] = ""
            return
        written = _FILE_WRITE.match(source)
        if written and self._open_file is not None:
            self.files[self._open_file] += _lua_unescape(written.group(1))
            return
        if source.startswith("f:close()"):
            self._open_file = None

        if self.silent:
            return
        if source.strip() == "print(frame.battery_level())":
            self.push(str(self.battery).encode())
            return
        printed = _PRINT_LITERAL.search(source)
        if printed:
            self.push(_lua_unescape(printed.group(1)).encode("utf-8"))

    def _on_message(self, message_type: int, payload: bytes) -> None:
        self.messages.append((message_type, payload))
        if message_type == MessageType.CAPTURE_SETTINGS:
            settings = TxCaptureSettings.unpack(payload)
            self.captures.append(settings)
            self._send_photo(settings)
        elif message_type == MessageType.AUTO_EXP_SETTINGS:
            self.auto_exposure = TxAutoExpSettings.unpack(payload)
        elif message_type == MessageType.MANUAL_EXP_SETTINGS:
            self.manual_exposure = TxManualExpSettings.unpack(payload)
            self.auto_exposure = None
        elif message_type == MessageType.TAP_SUBSCRIPTION:
            self.tap_subscribed = TxCode.unpack(payload).value == 1
        elif message_type == MessageType.PLAIN_TEXT:
            self.display.append(TxPlainText.unpack(payload).text)
        elif message_type == MessageType.START_IMU:
            self.imu_streaming = True
        elif message_type == MessageType.STOP_IMU:
            self.imu_streaming = False
        else:
            self.logger.debug("unhandled_message", message_type=message_type)

    # Outbound (notifications)

    def push(self, data: bytes) -> None:
        if self.handle is not None:
            self.handle.push(data)

    def push_data(self, flag: int, body: bytes = b"") -> None:
        self.push(bytes([DATA_MARKER, flag]) + body)

    def photo_packets(self, photo: bytes) -> list[bytes]:
        """Split a photo into flagged notifications."""
        if self.length_prefixed_photos:
            photo = len(photo).to_bytes(4, "big") + photo
        room = self.notify_size - 2
        bodies = [photo[i : i + room] for i in range(0, len(photo), room)] or [b""]
        packets = [bytes([DATA_MARKER, InboundFlag.PHOTO_CHUNK]) + body for body in bodies[:-1]]
        packets.append(bytes([DATA_MARKER, InboundFlag.PHOTO_FINAL]) + bodies[-1])
        return packets

    def _send_photo(self, settings: TxCaptureSettings) -> None:
        photo = self.photo
        if photo is None:
            quality = JPEG_QUALITY[min(max(settings.quality_index, 0), len(JPEG_QUALITY) - 1)]
            photo = make_jpeg(settings.resolution, settings.resolution, quality)
        packets = self.photo_packets(photo)
        for i, packet in enumerate(packets):
            self.push(packet)
            # Exposure results share the notification channel with photo data.
            if i == 0 and self.auto_exposure is not None and self.send_auto_exp_result:
                self.push_data(InboundFlag.AUTO_EXP_RESULT, self.auto_exp_result())

    def auto_exp_result(self) -> bytes:
        values = [0.02, 1600.0, 4.0, 1.9, 1.0, 2.1, 0.5, 0.48, 0.4, 0.5, 0.6, 0.5, 0.41, 0.52, 0.63, 0.52]
        return struct.pack("<16f", *values)

    def simulate_tap(self, count: int = 1) -> None:
        for _ in range(count):
            self.push_data(InboundFlag.TAP)

    def simulate_battery(self, level: int, charging: bool = False) -> None:
        self.battery = level
        self.push_data(InboundFlag.BATTERY, bytes([level & 0xFF, 1 if charging else 0]))

    def simulate_disconnect(self) -> None:
        if self.handle is not None:
            self.handle.mark_disconnected()


class MockTransport:
    """Transport backed by ``MockFrame`` instances.

    Failure injection: ``connect_errors`` is consumed one entry per connect
    call (None means succeed), ``empty_scans`` scans find nothing,
    ``discovery_failures`` discoveries fail, ``write_errors`` is consumed one
    entry per write.
    """

    def __init__(
        self,
        frames: list[MockFrame] | None = None,
        *,
        connect_errors: list[Exception | None] | None = None,
        empty_scans: int = 0,
        bond_result: bool = True,
        bond_error: Exception | None = None,
        mtu_error: bool = False,
        discovery_failures: int = 0,
        write_errors: list[Exception | None] | None = None,
    ) -> None:
        self.frames = frames if frames is not None else [MockFrame()]
        self.connect_errors = list(connect_errors or [])
        self.empty_scans = empty_scans
        self.bond_result = bond_result
        self.bond_error = bond_error
        self.mtu_error = mtu_error
        self.discovery_failures = discovery_failures
        self.write_errors = list(write_errors or [])

        self.scan_calls = 0
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.handles: list[LinkHandle] = []
        self.logger = get_logger("transport.mock")

    @property
    def frame(self) -> MockFrame:
        return self.frames[0]

    def _frame_for(self, handle: LinkHandle) -> MockFrame:
        for frame in self.frames:
            if frame.peripheral_id == handle.peripheral_id:
                return frame
        raise WriteFailed(f"Unknown peripheral {handle.peripheral_id}")

    async def scan(
        self,
        service_uuids: list[str],
        timeout: float,
    ) -> AsyncIterator[DiscoveredPeripheral]:
        self.scan_calls += 1
        if self.empty_scans > 0:
            self.empty_scans -= 1
            return
        for frame in self.frames:
            yield frame.advertisement()

    async def connect(self, peripheral: DiscoveredPeripheral, timeout: float) -> LinkHandle:
        self.connect_calls += 1
        if self.connect_errors:
            error = self.connect_errors.pop(0)
            if error is not None:
                raise error

        handle = LinkHandle(peripheral.id)
        for frame in self.frames:
            if frame.peripheral_id == peripheral.id:
                frame.handle = handle
        self.handles.append(handle)
        self.logger.debug("mock_connected", peripheral_id=peripheral.id)
        return handle

    async def bond(self, handle: LinkHandle, timeout: float) -> bool:
        if self.bond_error is not None:
            raise self.bond_error
        return self.bond_result

    async def negotiate_mtu(self, handle: LinkHandle, requested: int) -> int:
        if self.mtu_error:
            raise MtuNegotiationFailed("MTU exchange not supported")
        return min(self._frame_for(handle).mtu, requested)

    async def discover_services(
        self,
        handle: LinkHandle,
        service_uuid: str,
        tx_char_uuid: str,
        rx_char_uuid: str,
    ) -> None:
        if self.discovery_failures > 0:
            self.discovery_failures -= 1
            raise ServiceDiscoveryFailed(f"Service {service_uuid} not found")

    async def write(self, handle: LinkHandle, data: bytes, *, await_ack: bool = True) -> None:
        if not handle.connected:
            raise WriteFailed("Link is down")
        if self.write_errors:
            error = self.write_errors.pop(0)
            if error is not None:
                raise error
        self._frame_for(handle).receive(bytes(data))

    async def disconnect(self, handle: LinkHandle) -> None:
        self.disconnect_calls += 1
        handle.mark_disconnected()
