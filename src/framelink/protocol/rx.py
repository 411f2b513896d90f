"""Inbound (glasses to host) flags and decoded message types."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Union

from framelink.common.errors import ProtocolDecodeError


class InboundFlag(IntEnum):
    """Leading byte of a data notification (after the 0x01 marker)."""

    PHOTO_CHUNK = 0x07
    PHOTO_FINAL = 0x08
    TAP = 0x09
    IMU = 0x0A
    GENERIC_DATA = 0x0B
    BATTERY = 0x0C
    AUTO_EXP_RESULT = 0x11
    METERING_DATA = 0x12

    @classmethod
    def parse(cls, value: int) -> "InboundFlag | None":
        try:
            return cls(value)
        except ValueError:
            return None


JPEG_SOI = b"\xff\xd8"


@dataclass(frozen=True)
class Photo:
    """Complete photo payload (JPEG unless captured raw)."""

    data: bytes
    packets: int
    received_at: float = field(default_factory=time.time)

    @property
    def is_jpeg(self) -> bool:
        return self.data.startswith(JPEG_SOI)


@dataclass(frozen=True)
class TapEvent:
    """Single tap reported by the IMU."""

    received_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class BatteryLevel:
    level: int
    charging: bool = False


@dataclass(frozen=True)
class MeteringData:
    spot_r: int
    spot_g: int
    spot_b: int
    matrix_r: int
    matrix_g: int
    matrix_b: int

    SIZE = 6

    @classmethod
    def decode(cls, body: bytes) -> "MeteringData":
        if len(body) < cls.SIZE:
            raise ProtocolDecodeError(f"Metering data needs {cls.SIZE} bytes, got {len(body)}")
        return cls(*body[: cls.SIZE])


@dataclass(frozen=True)
class ChannelLevels:
    r: float
    g: float
    b: float
    average: float


@dataclass(frozen=True)
class Brightness:
    center_weighted_average: float
    scene: float
    matrix: ChannelLevels
    spot: ChannelLevels


@dataclass(frozen=True)
class AutoExpResult:
    """State of the frameside auto exposure loop after one iteration."""

    error: float
    shutter: float
    analog_gain: float
    red_gain: float
    green_gain: float
    blue_gain: float
    brightness: Brightness

    SIZE = 64
    _FORMAT = "<16f"

    @classmethod
    def decode(cls, body: bytes) -> "AutoExpResult":
        if len(body) < cls.SIZE:
            raise ProtocolDecodeError(f"Auto exposure result needs {cls.SIZE} bytes, got {len(body)}")
        v = struct.unpack(cls._FORMAT, body[: cls.SIZE])
        return cls(
            error=v[0],
            shutter=v[1],
            analog_gain=v[2],
            red_gain=v[3],
            green_gain=v[4],
            blue_gain=v[5],
            brightness=Brightness(
                center_weighted_average=v[6],
                scene=v[7],
                matrix=ChannelLevels(r=v[8], g=v[9], b=v[10], average=v[11]),
                spot=ChannelLevels(r=v[12], g=v[13], b=v[14], average=v[15]),
            ),
        )


@dataclass(frozen=True)
class ImuData:
    """Raw compass and accelerometer readings."""

    compass: tuple[int, int, int]
    accel: tuple[int, int, int]

    # One padding byte precedes six little-endian int16 values.
    SIZE = 13

    @classmethod
    def decode(cls, body: bytes) -> "ImuData":
        if len(body) < cls.SIZE:
            raise ProtocolDecodeError(f"IMU data needs {cls.SIZE} bytes, got {len(body)}")
        values = struct.unpack("<6h", body[1 : cls.SIZE])
        return cls(compass=values[0:3], accel=values[3:6])


@dataclass(frozen=True)
class GenericData:
    payload: bytes


@dataclass(frozen=True)
class TextResponse:
    """Text printed by the peripheral's interpreter."""

    text: str


DecodedMessage = Union[
    Photo,
    TapEvent,
    BatteryLevel,
    MeteringData,
    AutoExpResult,
    ImuData,
    GenericData,
    TextResponse,
]
