"""Tests for outbound message records and inbound decoders."""

import struct

import pytest

from framelink.common.errors import ProtocolDecodeError
from framelink.protocol.messages import (
    TxAutoExpSettings,
    TxCaptureSettings,
    TxCode,
    TxManualExpSettings,
    TxPlainText,
)
from framelink.protocol.rx import AutoExpResult, ImuData, InboundFlag, MeteringData


class TestTxCode:
    def test_masks_to_byte(self):
        assert TxCode(value=0x1FF).pack() == bytes([0xFF])

    def test_unpack(self):
        assert TxCode.unpack(bytes([7])).value == 7


class TestTxAutoExpSettings:
    """Tests for the auto exposure record."""

    def test_exposure_one_scales_to_255(self):
        """Test exposure=1.0 puts 255 in the exposure byte."""
        payload = TxAutoExpSettings(exposure=1.0).pack()

        assert len(payload) == 9
        assert payload[1] == 255

    def test_half_step_rounds_up(self):
        """Test a value halfway between two steps takes the upper one."""
        payload = TxAutoExpSettings(exposure=0.5 / 255, exposure_speed=0.5).pack()

        assert payload[1] == 1
        assert payload[2] == 128

    def test_layout(self):
        payload = TxAutoExpSettings(
            metering_index=2,
            exposure=0.0,
            exposure_speed=0.5,
            shutter_limit=16383,
            analog_gain_limit=248,
            white_balance_speed=1.0,
            rgb_gain_limit=1023,
        ).pack()

        assert payload == bytes([2, 0, 128, 0x3F, 0xFF, 248, 255, 0x03, 0xFF])

    @pytest.mark.parametrize("value", [0.0, 0.1, 0.33, 0.45, 0.5, 0.77, 1.0])
    def test_quantization_within_one_step(self, value: float):
        """Test unit floats survive packing within one quantization step."""
        settings = TxAutoExpSettings(exposure=value, exposure_speed=value, white_balance_speed=value)

        decoded = TxAutoExpSettings.unpack(settings.pack())

        step = 1 / 255
        assert abs(decoded.exposure - value) <= step
        assert abs(decoded.exposure_speed - value) <= step
        assert abs(decoded.white_balance_speed - value) <= step

    def test_integer_fields_round_trip(self):
        settings = TxAutoExpSettings(shutter_limit=4, analog_gain_limit=0, rgb_gain_limit=287)

        decoded = TxAutoExpSettings.unpack(settings.pack())

        assert decoded.shutter_limit == 4
        assert decoded.analog_gain_limit == 0
        assert decoded.rgb_gain_limit == 287


class TestTxManualExpSettings:
    def test_ten_bit_gains(self):
        payload = TxManualExpSettings(
            shutter=0x1234,
            analog_gain=248,
            red_gain=1023,
            green_gain=256,
            blue_gain=0x7FF,
        ).pack()

        assert payload == bytes([0x12, 0x34, 248, 0x03, 0xFF, 0x01, 0x00, 0x03, 0xFF])


class TestTxCaptureSettings:
    def test_layout(self):
        payload = TxCaptureSettings(resolution=512, quality_index=4, pan=-140, raw=False).pack()

        assert payload == bytes([4, 0x02, 0x00, 0, 0, 0])

    def test_unpack(self):
        settings = TxCaptureSettings.unpack(TxCaptureSettings(720, 2, pan=40, raw=True).pack())

        assert settings.resolution == 720
        assert settings.quality_index == 2
        assert settings.pan == 40
        assert settings.raw is True
        assert settings.quality_name == "MEDIUM"


class TestTxPlainText:
    def test_truncates_on_character_boundary(self):
        text = "é" * 40000  # 80000 bytes of UTF-8

        payload = TxPlainText(text).pack()

        assert len(payload) <= 0xFFFF
        payload[6:].decode("utf-8")


class TestInbound:
    """Tests for fixed-size inbound decoders."""

    def test_unknown_flag(self):
        assert InboundFlag.parse(0x7F) is None
        assert InboundFlag.parse(0x11) is InboundFlag.AUTO_EXP_RESULT

    def test_auto_exp_result(self):
        values = [float(i) for i in range(16)]
        result = AutoExpResult.decode(struct.pack("<16f", *values))

        assert result.error == 0.0
        assert result.blue_gain == 5.0
        assert result.brightness.scene == 7.0
        assert result.brightness.matrix.average == 11.0
        assert result.brightness.spot.r == 12.0

    def test_auto_exp_result_too_short(self):
        with pytest.raises(ProtocolDecodeError):
            AutoExpResult.decode(bytes(63))

    def test_metering(self):
        data = MeteringData.decode(bytes([1, 2, 3, 4, 5, 6]))

        assert (data.spot_r, data.matrix_b) == (1, 6)

    def test_metering_too_short(self):
        with pytest.raises(ProtocolDecodeError):
            MeteringData.decode(bytes(5))

    def test_imu(self):
        body = b"\x00" + struct.pack("<6h", 1, -2, 3, 100, -200, 300)

        imu = ImuData.decode(body)

        assert imu.compass == (1, -2, 3)
        assert imu.accel == (100, -200, 300)
