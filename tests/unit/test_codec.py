"""Tests for the command protocol codec."""

import pytest

from framelink.common.errors import PayloadTooLarge, ProtocolDecodeError
from framelink.protocol.codec import (
    DATA_MARKER,
    LengthPrefixedAssembler,
    MessageDecoder,
    encode,
    encode_message,
    encode_string,
    max_payload_length,
)
from framelink.protocol.messages import MessageType, TxCode, TxPlainText


class TestEncodeMessage:
    """Tests for chunking outbound messages."""

    def test_small_payload_single_chunk(self):
        """Test a payload that fits in one write."""
        chunks = encode_message(0x10, b"\x01", max_length=20)

        assert chunks == [bytes([DATA_MARKER, 0x10, 0x00, 0x01, 0x01])]

    def test_large_payload_splits_and_reconstructs(self):
        """Test chunk bodies concatenate back to the payload."""
        payload = bytes(range(256)) * 3
        max_length = 20

        chunks = encode_message(0x0A, payload, max_length)

        assert len(chunks) > 1
        assert all(len(c) <= max_length for c in chunks)
        assert all(c[0] == DATA_MARKER and c[1] == 0x0A for c in chunks)

        first, rest = chunks[0], chunks[1:]
        assert int.from_bytes(first[2:4], "big") == len(payload)
        body = first[4:] + b"".join(c[2:] for c in rest)
        assert body == payload

    def test_only_first_chunk_carries_length(self):
        """Test continuation chunks have a two byte header."""
        payload = b"x" * 50
        chunks = encode_message(0x0A, payload, max_length=10)

        assert len(chunks[0]) == 10
        assert chunks[0][2:4] == (50).to_bytes(2, "big")
        # 6 bytes in the first chunk, then 8 per continuation
        assert [len(c) - 2 for c in chunks[1:]] == [8, 8, 8, 8, 8, 4]

    def test_chunk_sizes_follow_mtu(self):
        """Test the default MTU leaves 20 bytes per write."""
        assert max_payload_length(23) == 20
        assert max_payload_length(247) == 244

        chunks = encode_message(0x0A, b"a" * 100, max_payload_length(23))
        assert max(len(c) for c in chunks) == 20

    def test_empty_payload(self):
        """Test an empty payload still produces a header chunk."""
        assert encode_message(0x41, b"", 20) == [bytes([DATA_MARKER, 0x41, 0, 0])]

    def test_payload_too_large(self):
        """Test payloads beyond the 16-bit length are refused."""
        with pytest.raises(PayloadTooLarge):
            encode_message(0x0A, bytes(0x10000), 244)

    def test_max_length_too_small(self):
        """Test a write size that cannot hold the header is refused."""
        with pytest.raises(ValueError):
            encode_message(0x0A, b"abc", 4)


class TestEncodeTyped:
    """Tests for encoding typed messages."""

    def test_tx_code_42(self):
        """Test TxCode(42) packs to a single byte."""
        msg = TxCode(value=42)

        assert msg.pack() == bytes([42])
        assert encode(msg, 20) == [bytes([DATA_MARKER, MessageType.TAP_SUBSCRIPTION, 0, 1, 42])]

    def test_message_type_override(self):
        """Test a code can be sent under another message type."""
        chunks = encode(TxCode(value=5), 20, message_type=MessageType.START_IMU)

        assert chunks[0][1] == 0x40

    def test_plain_text(self):
        """Test plain text layout."""
        chunks = encode(TxPlainText("hi", x=1, y=2), 100)

        assert chunks[0][4:] == bytes([0, 1, 0, 2, 1, 4]) + b"hi"


class TestEncodeString:
    """Tests for the text channel."""

    def test_encodes_utf8(self):
        assert encode_string('print("ping")', 20) == b'print("ping")'

    def test_too_long(self):
        with pytest.raises(PayloadTooLarge):
            encode_string("x" * 21, 20)


class TestLengthPrefixedAssembler:
    """Tests for length-prefixed reassembly."""

    def test_reassembles_across_packets(self):
        assembler = LengthPrefixedAssembler(prefix_size=2)

        assert assembler.feed(b"\x00\x05ab") is None
        assert assembler.active
        assert assembler.feed(b"cde") == b"abcde"
        assert not assembler.active

    def test_short_prefix(self):
        assembler = LengthPrefixedAssembler(prefix_size=4)

        with pytest.raises(ProtocolDecodeError):
            assembler.feed(b"\x00\x01")

    def test_overflow(self):
        assembler = LengthPrefixedAssembler(prefix_size=2)

        with pytest.raises(ProtocolDecodeError):
            assembler.feed(b"\x00\x02abc")
        assert not assembler.active


class TestMessageDecoder:
    """Tests for reading framed writes back."""

    def test_decodes_chunked_message(self):
        decoder = MessageDecoder()
        payload = b"z" * 45
        chunks = encode_message(0x0A, payload, 20)

        results = [decoder.feed(c) for c in chunks]

        assert results[:-1] == [None] * (len(chunks) - 1)
        assert results[-1] == (0x0A, payload)

    def test_rejects_unframed(self):
        with pytest.raises(ProtocolDecodeError):
            MessageDecoder().feed(b"print(1)")
