"""Session manager.

Owns the single connection to the glasses and its lifecycle::

    DISCONNECTED -> SCANNING -> CONNECTING -> BONDING -> NEGOTIATING_MTU
                 -> DISCOVERING_SERVICES -> READY

Any transport disconnect moves the session back to DISCONNECTED; when it was
READY an automatic reconnect is scheduled. All writes go through the
operation serializer.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from framelink.common.errors import (
    BondingFailed,
    ConnectionFailed,
    ConnectionLost,
    DeviceNotFound,
    FrameLinkError,
    MtuNegotiationFailed,
    NotConnected,
    PermissionDenied,
    ProtocolDecodeError,
)
from framelink.common.events import Event, EventBus
from framelink.common.health import LinkHealth
from framelink.common.logging import get_logger
from framelink.config import Config
from framelink.protocol.codec import (
    BREAK_SIGNAL,
    RESET_SIGNAL,
    encode,
    encode_message,
    encode_string,
    max_payload_length,
)
from framelink.protocol.messages import TxMsg
from framelink.protocol.rx import (
    AutoExpResult,
    BatteryLevel,
    DecodedMessage,
    GenericData,
    ImuData,
    MeteringData,
    Photo,
    TapEvent,
    TextResponse,
)
from framelink.reassembler import Reassembler, default_decoders
from framelink.serializer import OperationSerializer
from framelink.transport.base import DiscoveredPeripheral, LinkHandle, Transport

T = TypeVar("T")


class SessionState(Enum):
    """Connection lifecycle state."""

    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    BONDING = "bonding"
    NEGOTIATING_MTU = "negotiating_mtu"
    DISCOVERING_SERVICES = "discovering_services"
    READY = "ready"
    DISCONNECTING = "disconnecting"


@dataclass
class Connection:
    """One peripheral association."""

    device_id: str
    state: SessionState = SessionState.CONNECTING
    negotiated_mtu: int = 23
    handle: LinkHandle | None = field(default=None, repr=False)

    @property
    def max_payload_length(self) -> int:
        return max_payload_length(self.negotiated_mtu)


_TOPICS: dict[type, str] = {
    Photo: "rx.photo",
    TapEvent: "rx.tap",
    BatteryLevel: "rx.battery",
    MeteringData: "rx.metering",
    AutoExpResult: "rx.auto_exp",
    ImuData: "rx.imu",
    GenericData: "rx.generic",
    TextResponse: "rx.text",
}

BATTERY_QUERY = "print(frame.battery_level())"


def _lua_string(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


class FrameSession:
    """Connection to one pair of Frame glasses.

    Example:
        async with FrameSession(BleakTransport(), config) as session:
            await session.send_message(TxPlainText("hello"))
    """

    def __init__(
        self,
        transport: Transport,
        config: Config | None = None,
        event_bus: EventBus | None = None,
        reassembler: Reassembler | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the session.

        Args:
            transport: BLE capability to drive.
            config: Configuration; defaults are used if None.
            event_bus: Bus receiving state changes and decoded messages.
            reassembler: Inbound decoder; built from config if None.
            sleep: Coroutine used for retry backoff (injectable for tests).
        """
        self.transport = transport
        self.config = config or Config()
        self.event_bus = event_bus or EventBus()
        self.reassembler = reassembler or Reassembler(
            default_decoders(length_prefixed_photos=self.config.camera.length_prefixed)
        )
        self.health = LinkHealth()
        self.serializer = OperationSerializer.from_config(
            self.config.operation,
            ensure_ready=self.ensure_ready,
            health=self.health,
            sleep=sleep,
        )
        self.logger = get_logger("session")

        self._sleep = sleep
        self._state = SessionState.DISCONNECTED
        self._connection: Connection | None = None
        self._connect_lock = asyncio.Lock()
        self._closing = False
        self._pump_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._battery_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._lost_tasks: set[asyncio.Task] = set()
        self.battery: BatteryLevel | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connection(self) -> Connection | None:
        return self._connection

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY and self._connection is not None

    async def _set_state(self, state: SessionState, **data: Any) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        if self._connection is not None:
            self._connection.state = state
        self.logger.info("session_state", previous=previous.value, state=state.value, **data)
        await self.event_bus.publish(
            Event(
                topic="session.state",
                data={
                    "previous": previous.value,
                    "state": state.value,
                    "device_id": self._connection.device_id if self._connection else None,
                    **data,
                },
                source="session",
            )
        )

    # Connect

    async def connect(self) -> Connection:
        """Scan for the glasses and bring the link up.

        Returns:
            The ready connection.

        Raises:
            PermissionDenied: Bluetooth access is not permitted on this host.
            ConnectionFailed: Every connect attempt failed.
        """
        async with self._connect_lock:
            if self.is_ready:
                return self._connection

            self._closing = False
            retry = self.config.retry
            attempts = max(1, retry.max_connect_attempts)
            peripheral: DiscoveredPeripheral | None = None
            last_error: FrameLinkError | None = None

            for attempt in range(1, attempts + 1):
                if attempt > 1:
                    self.logger.info(
                        "connect_retry_scheduled",
                        attempt=attempt,
                        delay=retry.connect_retry_delay,
                    )
                    await self._sleep(retry.connect_retry_delay)
                try:
                    if peripheral is None:
                        peripheral = await self._find_peripheral()
                    return await self._establish(peripheral)
                except PermissionDenied:
                    await self._abandon()
                    raise
                except FrameLinkError as e:
                    last_error = e
                    if isinstance(e, DeviceNotFound):
                        peripheral = None
                    self.logger.warning(
                        "connect_attempt_failed",
                        attempt=attempt,
                        max_attempts=attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    await self._abandon()
                except BaseException as e:
                    # Unmapped backend errors and cancellation end the attempt loop.
                    self.logger.error("connect_aborted", attempt=attempt, error_type=type(e).__name__)
                    await self._abandon()
                    raise

            self.logger.error("connect_failed", attempts=attempts, error=str(last_error))
            raise ConnectionFailed(
                f"Could not connect after {attempts} attempts: {last_error}",
                last_error=last_error,
            ) from last_error

    def _is_candidate(self, peripheral: DiscoveredPeripheral) -> bool:
        ble = self.config.ble
        if peripheral.rssi < ble.rssi_floor:
            self.logger.debug("peripheral_too_weak", peripheral_id=peripheral.id, rssi=peripheral.rssi)
            return False
        advertised = {uuid.lower() for uuid in peripheral.service_uuids}
        if ble.service_uuid.lower() in advertised:
            return True
        name = (peripheral.name or "").lower()
        return bool(self.config.device.name_filter) and self.config.device.name_filter.lower() in name

    async def _find_peripheral(self) -> DiscoveredPeripheral:
        retry = self.config.retry
        scans = max(1, retry.max_scan_attempts)
        for scan in range(1, scans + 1):
            if scan > 1:
                self.logger.info("scan_retry_scheduled", attempt=scan, delay=retry.scan_retry_delay)
                await self._sleep(retry.scan_retry_delay)

            await self._set_state(SessionState.SCANNING)
            async with aclosing(
                self.transport.scan([self.config.ble.service_uuid], self.config.ble.scan_timeout)
            ) as results:
                async for peripheral in results:
                    if self._is_candidate(peripheral):
                        self.logger.info(
                            "peripheral_found",
                            peripheral_id=peripheral.id,
                            name=peripheral.name,
                            rssi=peripheral.rssi,
                        )
                        return peripheral

        raise DeviceNotFound(f"No Frame found after {scans} scans")

    async def _establish(self, peripheral: DiscoveredPeripheral) -> Connection:
        ble = self.config.ble
        self._connection = Connection(device_id=peripheral.id, negotiated_mtu=ble.default_mtu)
        await self._set_state(SessionState.CONNECTING, rssi=peripheral.rssi)

        handle = await self.transport.connect(peripheral, ble.connect_timeout)
        connection = self._connection
        connection.handle = handle

        if ble.bond:
            await self._set_state(SessionState.BONDING)
            try:
                if not await self.transport.bond(handle, ble.bond_timeout):
                    self.logger.warning("bonding_failed", reason="pairing declined")
            except BondingFailed as e:
                self.logger.warning("bonding_failed", error=str(e))

        if ble.stabilize_delay > 0:
            await asyncio.sleep(ble.stabilize_delay)

        await self._set_state(SessionState.NEGOTIATING_MTU)
        try:
            mtu = await self.transport.negotiate_mtu(handle, ble.requested_mtu)
        except MtuNegotiationFailed as e:
            mtu = ble.default_mtu
            self.logger.warning("mtu_negotiation_failed", error=str(e), fallback_mtu=mtu)
        handle.mtu = mtu
        connection.negotiated_mtu = mtu
        self.logger.info("mtu_negotiated", mtu=mtu, max_payload=connection.max_payload_length)

        await self._set_state(SessionState.DISCOVERING_SERVICES)
        await self.transport.discover_services(
            handle,
            ble.service_uuid,
            ble.tx_char_uuid,
            ble.rx_char_uuid,
        )

        handle.add_disconnect_callback(lambda: self._on_link_down(handle))
        if not handle.connected:
            raise ConnectionLost(f"Link to {peripheral.id} dropped during setup")

        self.reassembler.reset_all()
        self._pump_task = asyncio.create_task(self._pump(handle))
        await self._set_state(SessionState.READY, mtu=mtu)
        self._start_background()
        return connection

    async def _abandon(self) -> None:
        """Drop a half-built connection after a failed attempt."""
        connection, self._connection = self._connection, None
        await self._stop_background()
        if connection is not None and connection.handle is not None:
            await self.transport.disconnect(connection.handle)
        await self._set_state(SessionState.DISCONNECTED)

    # Link loss

    def _on_link_down(self, handle: LinkHandle) -> None:
        if self._closing or self._connection is None or self._connection.handle is not handle:
            return
        task = asyncio.create_task(self._handle_link_lost(handle, "disconnected"))
        self._lost_tasks.add(task)
        task.add_done_callback(self._lost_tasks.discard)

    async def _handle_link_lost(self, handle: LinkHandle, reason: str, reconnect: bool = True) -> None:
        connection = self._connection
        if connection is None or connection.handle is not handle:
            return
        was_ready = self._state == SessionState.READY
        self._connection = None

        self.logger.warning("link_lost", device_id=connection.device_id, reason=reason)
        error = ConnectionLost(f"Link to {connection.device_id} lost: {reason}")
        self.serializer.abort_active(error)
        self.reassembler.fail_subscriptions(error)
        self.reassembler.reset_all()
        await self._stop_background()
        if handle.connected:
            await self.transport.disconnect(handle)

        await self._set_state(SessionState.DISCONNECTED, reason=reason)
        await self.event_bus.publish(
            Event(
                topic="session.lost",
                data={"device_id": connection.device_id, "reason": reason},
                source="session",
            )
        )

        if reconnect and was_ready and self.config.retry.auto_reconnect and not self._closing:
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        delay = self.config.retry.reconnect_delay
        self.logger.info("reconnect_scheduled", delay=delay)
        await self._sleep(delay)
        if self._closing:
            return
        try:
            await self.connect()
        except ConnectionFailed as e:
            # Terminal: only an explicit connect() tries again.
            self.logger.error("reconnect_failed", error=str(e))
        except PermissionDenied as e:
            self.logger.error("reconnect_failed", error=str(e))

    async def wait_ready(self, timeout: float | None = None) -> bool:
        """Wait until the session reaches READY (e.g. after an auto reconnect)."""
        if self.is_ready:
            return True
        event = await self.event_bus.wait_for("session.state", timeout=timeout)
        while event is not None and event.data["state"] != SessionState.READY.value:
            event = await self.event_bus.wait_for("session.state", timeout=timeout)
        return self.is_ready

    # Disconnect

    async def disconnect(self) -> None:
        """Close the link. No reconnect is scheduled."""
        self._closing = True
        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        async with self._connect_lock:
            connection = self._connection
            if connection is None:
                await self._set_state(SessionState.DISCONNECTED)
                return

            await self._set_state(SessionState.DISCONNECTING)
            error = ConnectionLost(f"Session to {connection.device_id} closed")
            self.serializer.abort_active(error)
            self.reassembler.fail_subscriptions(error)
            await self._stop_background()
            self._connection = None
            if connection.handle is not None:
                await self.transport.disconnect(connection.handle)
            self.reassembler.reset_all()
            await self._set_state(SessionState.DISCONNECTED)

    async def __aenter__(self) -> "FrameSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # Background tasks

    def _start_background(self) -> None:
        hb = self.config.heartbeat
        if not hb.enabled:
            return
        if hb.interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        if hb.battery_poll_interval > 0:
            self._battery_task = asyncio.create_task(self._battery_loop())

    async def _stop_background(self) -> None:
        current = asyncio.current_task()
        tasks = [self._pump_task, self._heartbeat_task, self._battery_task]
        self._pump_task = self._heartbeat_task = self._battery_task = None
        for task in tasks:
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _pump(self, handle: LinkHandle) -> None:
        async for message in self.reassembler.attach(handle.notifications()):
            await self._dispatch(message)

    async def _dispatch(self, message: DecodedMessage) -> None:
        if isinstance(message, BatteryLevel):
            self.battery = message
            await self.event_bus.publish(
                Event(
                    topic="session.battery",
                    data={"level": message.level, "charging": message.charging},
                    source="session",
                )
            )
        await self.event_bus.publish(
            Event(topic=_TOPICS[type(message)], data={"message": message}, source="session")
        )

    async def _heartbeat_loop(self) -> None:
        hb = self.config.heartbeat
        while True:
            await asyncio.sleep(hb.interval)
            if self.serializer.busy:
                self.logger.debug("heartbeat_skipped", reason="operation in progress")
                continue
            try:
                latency = await self.probe()
                self.logger.debug("heartbeat_ok", latency_ms=round(latency, 1))
            except FrameLinkError as e:
                self.logger.warning("heartbeat_failed", error=str(e))
                if self._connection is not None and self._connection.handle is not None:
                    await self._handle_link_lost(self._connection.handle, "heartbeat probe failed")
                return

    async def _battery_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat.battery_poll_interval)
            if self.serializer.busy:
                continue
            try:
                level = await self.battery_level()
                self.logger.info("battery_level", level=level)
            except FrameLinkError as e:
                self.logger.warning("battery_poll_failed", error=str(e))

    # Liveness

    async def _probe_exchange(self) -> float:
        hb = self.config.heartbeat
        started = time.monotonic()
        async with self.reassembler.subscribe(TextResponse, reset_on_cancel=False) as replies:
            await self._write(encode_string(hb.probe_command, self._require_ready().max_payload_length))
            while True:
                reply = await replies.get()
                if reply.text.strip() == hb.probe_reply:
                    return (time.monotonic() - started) * 1000

    async def probe(self, timeout: float | None = None) -> float:
        """Round-trip a trivial command.

        Returns:
            Round-trip latency in milliseconds.
        """
        self._require_ready()
        return await self.serializer.run(
            self._probe_exchange,
            "probe",
            timeout=timeout or self.config.heartbeat.probe_timeout,
            max_attempts=1,
        )

    async def ensure_ready(self) -> None:
        """Verify the link before an operation retry; reconnect if it is dead.

        Runs while the serializer is held, so the probe is sent directly.
        """
        if self.is_ready:
            try:
                await asyncio.wait_for(self._probe_exchange(), timeout=self.config.heartbeat.probe_timeout)
                return
            except (asyncio.TimeoutError, FrameLinkError) as e:
                self.logger.warning("liveness_check_failed", error=str(e))
                if self._connection is not None and self._connection.handle is not None:
                    await self._handle_link_lost(
                        self._connection.handle, "liveness check failed", reconnect=False
                    )
        await self.connect()

    # Sending

    def _require_ready(self) -> Connection:
        if not self.is_ready:
            raise NotConnected(f"Session is {self._state.value}, not ready")
        return self._connection

    async def _write(self, data: bytes) -> None:
        connection = self._require_ready()
        await self.transport.write(connection.handle, data)

    async def _write_all(self, chunks: list[bytes]) -> None:
        for chunk in chunks:
            await self._write(chunk)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> T:
        """Run a request/response exchange through the serializer."""
        return await self.serializer.run(operation, name, timeout=timeout, max_attempts=max_attempts)

    async def send_message(self, message: TxMsg, message_type: int | None = None) -> None:
        """Frame and send a typed message."""
        self._require_ready()
        name = f"send_{type(message).__name__}"

        async def _send() -> None:
            await self._write_all(encode(message, self._require_ready().max_payload_length, message_type))

        await self.serializer.run(_send, name)

    async def send_data(self, message_type: int, payload: bytes) -> None:
        """Frame and send a raw payload under a message type."""
        self._require_ready()

        async def _send() -> None:
            await self._write_all(
                encode_message(message_type, payload, self._require_ready().max_payload_length)
            )

        await self.serializer.run(_send, f"send_data_{message_type:#04x}")

    async def send_string(self, text: str, await_reply: bool = False, timeout: float | None = None) -> str | None:
        """Send interpreter source on the text channel.

        Args:
            text: Lua source, at most one write long.
            await_reply: Wait for the next printed line and return it.
            timeout: Bound for the whole exchange.
        """
        self._require_ready()

        async def _send() -> str | None:
            data = encode_string(text, self._require_ready().max_payload_length)
            if not await_reply:
                await self._write(data)
                return None
            async with self.reassembler.subscribe(TextResponse, reset_on_cancel=False) as replies:
                await self._write(data)
                reply = await replies.get()
                return reply.text

        return await self.serializer.run(_send, "send_string", timeout=timeout)

    async def send_break(self) -> None:
        """Interrupt the running script."""
        self._require_ready()
        await self.serializer.run(lambda: self._write(bytes([BREAK_SIGNAL])), "break")

    async def send_reset(self) -> None:
        """Restart the interpreter."""
        self._require_ready()
        await self.serializer.run(lambda: self._write(bytes([RESET_SIGNAL])), "reset")

    async def battery_level(self) -> int:
        """Ask the glasses for their battery percentage."""
        reply = await self.send_string(BATTERY_QUERY, await_reply=True)
        try:
            level = int(float(reply or ""))
        except ValueError as e:
            raise ProtocolDecodeError(f"Unexpected battery reply: {reply!r}") from e
        self.battery = BatteryLevel(level=level)
        await self.event_bus.publish(
            Event(topic="session.battery", data={"level": level, "charging": False}, source="session")
        )
        return level

    async def upload_script(self, file_name: str, content: str, reply: str = "uploaded") -> None:
        """Write a Lua file onto the glasses' filesystem.

        The content is sent as a sequence of ``f:write`` statements, each of
        which fits one write at the negotiated MTU.
        """
        self._require_ready()

        async def _upload() -> None:
            limit = self._require_ready().max_payload_length
            name = _lua_string(file_name)
            async with self.reassembler.subscribe(TextResponse, reset_on_cancel=False) as replies:
                await self._write(encode_string(f'f=frame.file.open("{name}","write")', limit))
                for statement in self._write_statements(content, limit):
                    await self._write(encode_string(statement, limit))
                await self._write(encode_string(f'f:close() print("{_lua_string(reply)}")', limit))
                while (await replies.get()).text.strip() != reply:
                    pass
            self.logger.info("script_uploaded", file_name=file_name, size=len(content))

        await self.serializer.run(_upload, f"upload_{file_name}")

    @staticmethod
    def _write_statements(content: str, limit: int) -> list[str]:
        room = limit - len('f:write("")')
        if room <= 0:
            raise ValueError(f"Write limit {limit} too small for script upload")
        statements = []
        piece = ""
        for char in content:
            escaped = _lua_string(char)
            if len((piece + escaped).encode("utf-8")) > room:
                statements.append(f'f:write("{piece}")')
                piece = ""
            piece += escaped
        if piece:
            statements.append(f'f:write("{piece}")')
        return statements

    def status(self) -> dict:
        connection = self._connection
        return {
            "state": self._state.value,
            "device_id": connection.device_id if connection else None,
            "mtu": connection.negotiated_mtu if connection else None,
            "battery": self.battery.level if self.battery else None,
            "health": self.health.to_dict(),
            "dropped_packets": self.reassembler.dropped,
        }
