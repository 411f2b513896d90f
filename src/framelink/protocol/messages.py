"""Outbound (host to glasses) message records.

Each message packs into a compact fixed byte layout that the frameside Lua
parsers decode. The codec prepends the data marker, the message type and
(first packet only) the 16-bit payload length.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class MessageType(IntEnum):
    """Message type bytes understood by the frameside app."""

    PLAIN_TEXT = 0x0A
    CAPTURE_SETTINGS = 0x0D
    AUTO_EXP_SETTINGS = 0x0E
    MANUAL_EXP_SETTINGS = 0x0F
    TAP_SUBSCRIPTION = 0x10
    START_IMU = 0x40
    STOP_IMU = 0x41


class TxMsg:
    """Base class for all outbound messages."""

    message_type: MessageType

    def pack(self) -> bytes:
        raise NotImplementedError


def _scale_unit(value: float) -> int:
    """Map 0.0..1.0 onto an unsigned byte, rounding halves up."""
    return int(value * 255 + 0.5) & 0xFF


@dataclass
class TxCode(TxMsg):
    """A single byte signal (toggle streaming, subscribe to taps, ...)."""

    value: int = 0
    message_type: MessageType = MessageType.TAP_SUBSCRIPTION

    def pack(self) -> bytes:
        return bytes([self.value & 0xFF])

    @classmethod
    def unpack(cls, payload: bytes, message_type: MessageType = MessageType.TAP_SUBSCRIPTION) -> "TxCode":
        return cls(value=payload[0] if payload else 0, message_type=message_type)


@dataclass
class TxAutoExpSettings(TxMsg):
    """Auto exposure and gain settings.

    Ranges: metering_index 0..2 (spot, center weighted, average),
    exposure / exposure_speed / white_balance_speed 0.0..1.0,
    shutter_limit 4..16383, analog_gain_limit 0..248, rgb_gain_limit 0..1023.
    """

    metering_index: int = 1
    exposure: float = 0.1
    exposure_speed: float = 0.45
    shutter_limit: int = 16383
    analog_gain_limit: int = 16
    white_balance_speed: float = 0.5
    rgb_gain_limit: int = 287

    message_type = MessageType.AUTO_EXP_SETTINGS

    def pack(self) -> bytes:
        return bytes(
            [
                self.metering_index & 0xFF,
                _scale_unit(self.exposure),
                _scale_unit(self.exposure_speed),
                (self.shutter_limit >> 8) & 0xFF,
                self.shutter_limit & 0xFF,
                self.analog_gain_limit & 0xFF,
                _scale_unit(self.white_balance_speed),
                (self.rgb_gain_limit >> 8) & 0xFF,
                self.rgb_gain_limit & 0xFF,
            ]
        )

    @classmethod
    def unpack(cls, payload: bytes) -> "TxAutoExpSettings":
        if len(payload) < 9:
            raise ValueError(f"auto exposure settings need 9 bytes, got {len(payload)}")
        return cls(
            metering_index=payload[0],
            exposure=payload[1] / 255,
            exposure_speed=payload[2] / 255,
            shutter_limit=(payload[3] << 8) | payload[4],
            analog_gain_limit=payload[5],
            white_balance_speed=payload[6] / 255,
            rgb_gain_limit=(payload[7] << 8) | payload[8],
        )


@dataclass
class TxManualExpSettings(TxMsg):
    """Manual exposure and gain settings.

    Ranges: shutter 4..16383, analog_gain 0..248, color gains 0..1023
    (10 bits, sent as a 2-bit MSB byte and an LSB byte).
    """

    shutter: int = 4096
    analog_gain: int = 1
    red_gain: int = 121
    green_gain: int = 64
    blue_gain: int = 140

    message_type = MessageType.MANUAL_EXP_SETTINGS

    def pack(self) -> bytes:
        return bytes(
            [
                (self.shutter >> 8) & 0xFF,
                self.shutter & 0xFF,
                self.analog_gain & 0xFF,
                (self.red_gain >> 8) & 0x03,
                self.red_gain & 0xFF,
                (self.green_gain >> 8) & 0x03,
                self.green_gain & 0xFF,
                (self.blue_gain >> 8) & 0x03,
                self.blue_gain & 0xFF,
            ]
        )

    @classmethod
    def unpack(cls, payload: bytes) -> "TxManualExpSettings":
        if len(payload) < 9:
            raise ValueError(f"manual exposure settings need 9 bytes, got {len(payload)}")
        return cls(
            shutter=(payload[0] << 8) | payload[1],
            analog_gain=payload[2],
            red_gain=(payload[3] << 8) | payload[4],
            green_gain=(payload[5] << 8) | payload[6],
            blue_gain=(payload[7] << 8) | payload[8],
        )


QUALITY_NAMES = ("VERY_LOW", "LOW", "MEDIUM", "HIGH", "VERY_HIGH")


@dataclass
class TxCaptureSettings(TxMsg):
    """Request a photo.

    quality_index 0..4, resolution 100..720 (even), pan -140..140,
    raw omits the JPEG header on the wire.
    """

    resolution: int = 512
    quality_index: int = 4
    pan: int = 0
    raw: bool = False

    message_type = MessageType.CAPTURE_SETTINGS

    def pack(self) -> bytes:
        pan = (self.pan + 140) & 0xFFFF
        return bytes(
            [
                self.quality_index & 0xFF,
                (self.resolution >> 8) & 0xFF,
                self.resolution & 0xFF,
                (pan >> 8) & 0xFF,
                pan & 0xFF,
                0x01 if self.raw else 0x00,
            ]
        )

    @classmethod
    def unpack(cls, payload: bytes) -> "TxCaptureSettings":
        if len(payload) < 6:
            raise ValueError(f"capture settings need 6 bytes, got {len(payload)}")
        return cls(
            quality_index=payload[0],
            resolution=(payload[1] << 8) | payload[2],
            pan=((payload[3] << 8) | payload[4]) - 140,
            raw=payload[5] == 0x01,
        )

    @property
    def quality_name(self) -> str:
        if 0 <= self.quality_index < len(QUALITY_NAMES):
            return QUALITY_NAMES[self.quality_index]
        return str(self.quality_index)


_TEXT_HEADER = 6
_MAX_TEXT_BYTES = 0xFFFF - _TEXT_HEADER


@dataclass
class TxPlainText(TxMsg):
    """Text to draw on the display at (x, y) using a palette offset."""

    text: str
    x: int = 1
    y: int = 1
    palette_offset: int = 1
    spacing: int = 4

    message_type = MessageType.PLAIN_TEXT

    def pack(self) -> bytes:
        encoded = self.text.encode("utf-8")
        if len(encoded) > _MAX_TEXT_BYTES:
            # Cut on a character boundary.
            encoded = encoded[:_MAX_TEXT_BYTES].decode("utf-8", "ignore").encode("utf-8")
        return (
            bytes(
                [
                    (self.x >> 8) & 0xFF,
                    self.x & 0xFF,
                    (self.y >> 8) & 0xFF,
                    self.y & 0xFF,
                    self.palette_offset & 0x0F,
                    self.spacing & 0xFF,
                ]
            )
            + encoded
        )

    @classmethod
    def unpack(cls, payload: bytes) -> "TxPlainText":
        if len(payload) < _TEXT_HEADER:
            raise ValueError(f"plain text needs at least {_TEXT_HEADER} bytes, got {len(payload)}")
        return cls(
            text=payload[_TEXT_HEADER:].decode("utf-8", "replace"),
            x=(payload[0] << 8) | payload[1],
            y=(payload[2] << 8) | payload[3],
            palette_offset=payload[4],
            spacing=payload[5],
        )
