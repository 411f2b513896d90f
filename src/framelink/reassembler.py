"""Photo/stream reassembler.

Consumes raw notifications from the RX characteristic, demultiplexes data
packets by their flag byte and rebuilds complete application messages. Each
logical stream owns one accumulator, so interleaved streams never mix.
Malformed packets are logged and dropped; the stream continues.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from framelink.common.errors import ProtocolDecodeError
from framelink.common.logging import get_logger
from framelink.protocol.codec import DATA_MARKER, LengthPrefixedAssembler
from framelink.protocol.rx import (
    JPEG_SOI,
    AutoExpResult,
    BatteryLevel,
    DecodedMessage,
    GenericData,
    ImuData,
    InboundFlag,
    MeteringData,
    Photo,
    TapEvent,
    TextResponse,
)


@dataclass
class ReassemblyBuffer:
    """Bytes accumulated so far for one multi-packet message."""

    stream: str
    data: bytearray = field(default_factory=bytearray)
    expected_length: int | None = None
    packets: int = 0
    started_at: float = field(default_factory=time.monotonic)


class StreamDecoder:
    """Decoder for one logical inbound stream."""

    stream: str
    flags: tuple[InboundFlag, ...]
    produces: type

    def feed(self, flag: InboundFlag, body: bytes) -> DecodedMessage | None:
        raise NotImplementedError

    def reset(self) -> None:
        """Drop any partial message."""

    @property
    def buffer(self) -> ReassemblyBuffer | None:
        return None


class SinglePacketDecoder(StreamDecoder):
    """Stream whose every packet is a complete message."""

    def __init__(
        self,
        stream: str,
        flag: InboundFlag,
        produces: type,
        decode: Callable[[bytes], DecodedMessage],
    ) -> None:
        self.stream = stream
        self.flags = (flag,)
        self.produces = produces
        self._decode = decode

    def feed(self, flag: InboundFlag, body: bytes) -> DecodedMessage | None:
        return self._decode(body)


def _decode_battery(body: bytes) -> BatteryLevel:
    if not body:
        raise ProtocolDecodeError("Battery packet has no level byte")
    charging = len(body) > 1 and body[1] != 0
    return BatteryLevel(level=body[0], charging=charging)


class PhotoDecoder(StreamDecoder):
    """Accumulates photo chunks.

    Terminated mode: ``PHOTO_CHUNK`` packets until a ``PHOTO_FINAL`` packet
    (whose body, possibly empty, is the last piece). Length-prefixed mode: the
    first packet starts with a 4 byte big-endian total size and the photo is
    complete once that many bytes arrived.

    Outside raw mode a terminated photo must open with the JPEG start marker;
    the tail of a photo whose start was discarded is dropped.
    """

    stream = "photo"
    flags = (InboundFlag.PHOTO_CHUNK, InboundFlag.PHOTO_FINAL)
    produces = Photo

    def __init__(self, length_prefixed: bool = False, raw: bool = False) -> None:
        self.length_prefixed = length_prefixed
        self.raw = raw
        self.restarts = 0
        self._buffer: ReassemblyBuffer | None = None
        self._sized = LengthPrefixedAssembler(prefix_size=4)
        self.logger = get_logger("reassembler.photo")

    @property
    def buffer(self) -> ReassemblyBuffer | None:
        return self._buffer

    def reset(self) -> None:
        self._buffer = None
        self._sized.reset()

    def feed(self, flag: InboundFlag, body: bytes) -> DecodedMessage | None:
        final = flag == InboundFlag.PHOTO_FINAL
        if self.length_prefixed:
            return self._feed_sized(final, body)

        if self._buffer is None:
            self._buffer = ReassemblyBuffer(self.stream)
        elif self._buffer.data and body.startswith(JPEG_SOI):
            # SOI cannot occur inside entropy-coded data: a new image started.
            self.restarts += 1
            self.logger.warning(
                "photo_restarted",
                discarded_bytes=len(self._buffer.data),
                packets=self._buffer.packets,
            )
            self._buffer = ReassemblyBuffer(self.stream)

        self._buffer.data.extend(body)
        self._buffer.packets += 1
        if not final:
            return None

        data = bytes(self._buffer.data)
        packets = self._buffer.packets
        self._buffer = None
        if not self.raw and not data.startswith(JPEG_SOI):
            raise ProtocolDecodeError(f"Photo of {len(data)} bytes has no JPEG start marker")
        return Photo(data=data, packets=packets)

    def _feed_sized(self, final: bool, body: bytes) -> DecodedMessage | None:
        if self._buffer is None:
            if final and not body:
                return None
            self._buffer = ReassemblyBuffer(self.stream)

        self._buffer.packets += 1
        try:
            payload = self._sized.feed(body)
        except ProtocolDecodeError:
            self._buffer = None
            raise
        self._buffer.expected_length = self._sized.expected

        if payload is None:
            self._buffer.data = self._sized.buffer
            if final:
                missing = (self._sized.expected or 0) - len(self._sized.buffer)
                self.reset()
                raise ProtocolDecodeError(f"Photo ended {missing} bytes short of declared size")
            return None

        photo = Photo(data=payload, packets=self._buffer.packets)
        self._buffer = None
        return photo


class GenericDataDecoder(StreamDecoder):
    """Length-prefixed payload using the same layout as outbound messages."""

    stream = "generic"
    flags = (InboundFlag.GENERIC_DATA,)
    produces = GenericData

    def __init__(self) -> None:
        self._assembler = LengthPrefixedAssembler(prefix_size=2)
        self._buffer: ReassemblyBuffer | None = None

    @property
    def buffer(self) -> ReassemblyBuffer | None:
        return self._buffer

    def reset(self) -> None:
        self._assembler.reset()
        self._buffer = None

    def feed(self, flag: InboundFlag, body: bytes) -> DecodedMessage | None:
        if self._buffer is None:
            self._buffer = ReassemblyBuffer(self.stream)
        self._buffer.packets += 1
        try:
            payload = self._assembler.feed(body)
        except ProtocolDecodeError:
            self._buffer = None
            raise
        if payload is None:
            self._buffer.expected_length = self._assembler.expected
            self._buffer.data = self._assembler.buffer
            return None
        self._buffer = None
        return GenericData(payload=payload)


def default_decoders(length_prefixed_photos: bool = False) -> list[StreamDecoder]:
    return [
        PhotoDecoder(length_prefixed=length_prefixed_photos),
        SinglePacketDecoder("tap", InboundFlag.TAP, TapEvent, lambda body: TapEvent()),
        SinglePacketDecoder("battery", InboundFlag.BATTERY, BatteryLevel, _decode_battery),
        SinglePacketDecoder("metering", InboundFlag.METERING_DATA, MeteringData, MeteringData.decode),
        SinglePacketDecoder("auto_exp", InboundFlag.AUTO_EXP_RESULT, AutoExpResult, AutoExpResult.decode),
        SinglePacketDecoder("imu", InboundFlag.IMU, ImuData, ImuData.decode),
        GenericDataDecoder(),
    ]


class MessageSubscription:
    """Queue of decoded messages of the requested types.

    Use as an async context manager. Leaving the block with an exception
    (including cancellation) resets the accumulators feeding it so an
    abandoned partial message cannot leak into the next one.
    """

    def __init__(
        self,
        reassembler: "Reassembler",
        types: tuple[type, ...],
        reset_on_cancel: bool = True,
    ) -> None:
        self._reassembler = reassembler
        self.types = types
        self.reset_on_cancel = reset_on_cancel
        self._queue: asyncio.Queue[DecodedMessage | BaseException] = asyncio.Queue()
        self.closed = False

    def offer(self, message: DecodedMessage) -> None:
        if not self.closed and isinstance(message, self.types):
            self._queue.put_nowait(message)

    def fail(self, error: BaseException) -> None:
        """Wake the consumer with an error (link loss)."""
        if not self.closed:
            self._queue.put_nowait(error)

    async def get(self, timeout: float | None = None) -> DecodedMessage:
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if isinstance(item, BaseException):
            raise item
        return item

    def get_nowait(self) -> DecodedMessage | None:
        """Return the next queued message, or None if there is none."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if isinstance(item, BaseException):
            raise item
        return item

    def __aiter__(self) -> "MessageSubscription":
        return self

    async def __anext__(self) -> DecodedMessage:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    def close(self) -> None:
        self.closed = True
        self._reassembler._unsubscribe(self)

    async def __aenter__(self) -> "MessageSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
        if exc_type is not None and self.reset_on_cancel:
            for decoder in self._reassembler.decoders_for(self.types):
                self._reassembler.reset(decoder.stream)


class Reassembler:
    """Demultiplexes notifications into complete decoded messages."""

    def __init__(self, decoders: list[StreamDecoder] | None = None) -> None:
        self._decoders = decoders if decoders is not None else default_decoders()
        self._by_flag: dict[InboundFlag, StreamDecoder] = {}
        for decoder in self._decoders:
            for flag in decoder.flags:
                self._by_flag[flag] = decoder
        self._subscriptions: list[MessageSubscription] = []
        self.dropped = 0
        self.logger = get_logger("reassembler")

    def decoder(self, stream: str) -> StreamDecoder:
        for decoder in self._decoders:
            if decoder.stream == stream:
                return decoder
        raise KeyError(stream)

    def decoders_for(self, types: tuple[type, ...]) -> list[StreamDecoder]:
        return [d for d in self._decoders if issubclass(d.produces, types)]

    def configure_photo(self, length_prefixed: bool, raw: bool = False) -> None:
        """Select the photo framing for the next capture."""
        decoder = self.decoder("photo")
        if not isinstance(decoder, PhotoDecoder):
            return
        decoder.raw = raw
        if decoder.length_prefixed != length_prefixed:
            decoder.reset()
            decoder.length_prefixed = length_prefixed

    def reset(self, stream: str) -> None:
        decoder = self.decoder(stream)
        if decoder.buffer is not None:
            self.logger.info("accumulator_reset", stream=stream, discarded_bytes=len(decoder.buffer.data))
        decoder.reset()

    def reset_all(self) -> None:
        for decoder in self._decoders:
            decoder.reset()

    def feed(self, packet: bytes) -> list[DecodedMessage]:
        """Process one notification and return any messages it completed."""
        if not packet:
            return []

        if packet[0] != DATA_MARKER:
            message: DecodedMessage | None = TextResponse(packet.decode("utf-8", "replace"))
        else:
            message = self._feed_data(packet)

        if message is None:
            return []
        for subscription in list(self._subscriptions):
            subscription.offer(message)
        return [message]

    def _feed_data(self, packet: bytes) -> DecodedMessage | None:
        if len(packet) < 2:
            self.dropped += 1
            self.logger.warning("packet_dropped", reason="missing flag byte")
            return None

        flag = InboundFlag.parse(packet[1])
        if flag is None:
            self.logger.debug("unknown_flag_ignored", flag=hex(packet[1]), size=len(packet))
            return None

        decoder = self._by_flag.get(flag)
        if decoder is None:
            self.logger.debug("unhandled_flag_ignored", flag=flag.name)
            return None

        try:
            return decoder.feed(flag, packet[2:])
        except ProtocolDecodeError as e:
            self.dropped += 1
            decoder.reset()
            self.logger.warning("packet_dropped", stream=decoder.stream, flag=flag.name, error=str(e))
            return None

    async def attach(self, notifications: AsyncIterator[bytes]) -> AsyncIterator[DecodedMessage]:
        """Turn a raw notification stream into a stream of decoded messages."""
        async for packet in notifications:
            for message in self.feed(packet):
                yield message

    def subscribe(self, *types: type, reset_on_cancel: bool = True) -> MessageSubscription:
        subscription = MessageSubscription(self, types, reset_on_cancel)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: MessageSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def fail_subscriptions(self, error: BaseException) -> None:
        for subscription in list(self._subscriptions):
            subscription.fail(error)
