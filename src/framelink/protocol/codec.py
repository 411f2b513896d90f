"""Command protocol codec.

Wire layout of one outbound message split across BLE writes::

    first:  [0x01][type][len_hi][len_lo][payload ...]
    others: [0x01][type][payload ...]

Every write is at most ``max_payload_length`` bytes (MTU minus the 3 byte ATT
header). The peripheral's data handler concatenates chunks per message type
until it has ``len`` payload bytes.
"""

from __future__ import annotations

from framelink.common.errors import PayloadTooLarge, ProtocolDecodeError
from framelink.protocol.messages import TxMsg

DATA_MARKER = 0x01
BREAK_SIGNAL = 0x03
RESET_SIGNAL = 0x04

ATT_OVERHEAD = 3
FIRST_HEADER = 4
CHUNK_HEADER = 2
MAX_MESSAGE_PAYLOAD = 0xFFFF
MIN_PAYLOAD_LENGTH = FIRST_HEADER + 1


def max_payload_length(mtu: int) -> int:
    """Largest single write for a negotiated MTU."""
    return mtu - ATT_OVERHEAD


def encode_message(message_type: int, payload: bytes, max_length: int) -> list[bytes]:
    """Split one message into ordered BLE writes.

    Args:
        message_type: Message type byte.
        payload: Message body.
        max_length: Maximum bytes per write.

    Returns:
        Chunks in transmission order. The first carries the payload length.
    """
    if max_length < MIN_PAYLOAD_LENGTH:
        raise ValueError(f"max_length {max_length} cannot carry a framed chunk")
    if len(payload) > MAX_MESSAGE_PAYLOAD:
        raise PayloadTooLarge(f"Payload of {len(payload)} bytes exceeds {MAX_MESSAGE_PAYLOAD}")

    message_type &= 0xFF
    size = len(payload)
    first_room = max_length - FIRST_HEADER
    chunks = [
        bytes([DATA_MARKER, message_type, (size >> 8) & 0xFF, size & 0xFF]) + payload[:first_room]
    ]

    room = max_length - CHUNK_HEADER
    for offset in range(first_room, size, room):
        chunks.append(bytes([DATA_MARKER, message_type]) + payload[offset : offset + room])

    return chunks


def encode(msg: TxMsg, max_length: int, message_type: int | None = None) -> list[bytes]:
    """Pack and frame a typed message."""
    return encode_message(
        msg.message_type if message_type is None else message_type,
        msg.pack(),
        max_length,
    )


def encode_string(text: str, max_length: int) -> bytes:
    """Encode interpreter source sent on the text channel (no framing)."""
    data = text.encode("utf-8")
    if len(data) > max_length:
        raise PayloadTooLarge(f"Script of {len(data)} bytes exceeds {max_length} per write")
    return data


class LengthPrefixedAssembler:
    """Reassemble a length-prefixed multi-packet payload.

    The first packet starts with a big-endian length of ``prefix_size`` bytes;
    later packets carry raw continuation bytes.
    """

    def __init__(self, prefix_size: int = 2) -> None:
        self.prefix_size = prefix_size
        self.expected: int | None = None
        self.buffer = bytearray()

    @property
    def active(self) -> bool:
        return self.expected is not None

    def feed(self, body: bytes) -> bytes | None:
        """Add one packet body; returns the payload once complete."""
        if self.expected is None:
            if len(body) < self.prefix_size:
                raise ProtocolDecodeError(
                    f"First packet has {len(body)} bytes, length prefix needs {self.prefix_size}"
                )
            self.expected = int.from_bytes(body[: self.prefix_size], "big")
            body = body[self.prefix_size :]

        self.buffer.extend(body)
        if len(self.buffer) < self.expected:
            return None

        overflow = len(self.buffer) - self.expected
        payload = bytes(self.buffer[: self.expected])
        self.reset()
        if overflow:
            raise ProtocolDecodeError(f"Message overran declared length by {overflow} bytes")
        return payload

    def reset(self) -> None:
        self.expected = None
        self.buffer = bytearray()


class MessageDecoder:
    """Inverse of ``encode_message`` for a stream of outbound writes.

    Used by the in-memory peripheral to read what the host sent.
    """

    def __init__(self) -> None:
        self._pending: dict[int, LengthPrefixedAssembler] = {}

    def feed(self, chunk: bytes) -> tuple[int, bytes] | None:
        if len(chunk) < CHUNK_HEADER or chunk[0] != DATA_MARKER:
            raise ProtocolDecodeError("Not a framed data chunk")
        message_type = chunk[1]
        assembler = self._pending.setdefault(message_type, LengthPrefixedAssembler(prefix_size=2))
        payload = assembler.feed(chunk[CHUNK_HEADER:])
        if payload is None:
            return None
        del self._pending[message_type]
        return message_type, payload
