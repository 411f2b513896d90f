"""Photo capture on top of a session."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator

from framelink.common.logging import get_logger
from framelink.config import CameraConfig
from framelink.protocol.messages import (
    TxAutoExpSettings,
    TxCaptureSettings,
    TxManualExpSettings,
)
from framelink.protocol.rx import AutoExpResult, Photo
from framelink.session import FrameSession


@dataclass(frozen=True)
class ImageMetadata:
    """Description of one captured photo."""

    mode: str
    resolution: int
    quality: str
    pan: int
    size: int
    elapsed_ms: int
    exposure: dict[str, Any] = field(default_factory=dict)
    captured_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CapturedPhoto:
    data: bytes
    metadata: ImageMetadata
    auto_exp_result: AutoExpResult | None = None


class FrameCamera:
    """Captures photos from the glasses' camera.

    Each capture is one serialized operation: exposure settings and capture
    settings are sent, then the photo is reassembled from the notification
    stream. A timed out or cancelled capture resets the photo accumulator.
    """

    def __init__(self, session: FrameSession, config: CameraConfig | None = None) -> None:
        self.session = session
        self.config = config or session.config.camera
        self.logger = get_logger("camera")
        self._count = 0

    def capture_settings(self) -> TxCaptureSettings:
        return TxCaptureSettings(
            resolution=self.config.resolution,
            quality_index=self.config.quality_index,
            pan=self.config.pan,
            raw=self.config.raw,
        )

    def exposure_settings(self) -> TxAutoExpSettings | TxManualExpSettings:
        if self.config.auto_exposure:
            auto = self.config.auto
            return TxAutoExpSettings(
                metering_index=auto.metering_index,
                exposure=auto.exposure,
                exposure_speed=auto.exposure_speed,
                shutter_limit=auto.shutter_limit,
                analog_gain_limit=auto.analog_gain_limit,
                white_balance_speed=auto.white_balance_speed,
                rgb_gain_limit=auto.rgb_gain_limit,
            )
        manual = self.config.manual
        return TxManualExpSettings(
            shutter=manual.shutter,
            analog_gain=manual.analog_gain,
            red_gain=manual.red_gain,
            green_gain=manual.green_gain,
            blue_gain=manual.blue_gain,
        )

    async def capture(
        self,
        settings: TxCaptureSettings | None = None,
        timeout: float | None = None,
    ) -> CapturedPhoto:
        """Take one photo.

        Args:
            settings: Capture settings; built from config if None.
            timeout: Bound for one attempt (defaults to ``photo_timeout``).

        Returns:
            The photo bytes with metadata.
        """
        settings = settings or self.capture_settings()
        exposure = self.exposure_settings()
        reassembler = self.session.reassembler

        async def _capture() -> CapturedPhoto:
            reassembler.configure_photo(self.config.length_prefixed, raw=settings.raw)
            started = time.monotonic()
            async with reassembler.subscribe(Photo) as photos, reassembler.subscribe(
                AutoExpResult, reset_on_cancel=False
            ) as results:
                await self.session.send_message(exposure)
                await self.session.send_message(settings)
                photo: Photo = await photos.get()

                auto_exp_result = None
                while (result := results.get_nowait()) is not None:
                    auto_exp_result = result

            elapsed_ms = int((time.monotonic() - started) * 1000)
            metadata = ImageMetadata(
                mode="auto" if isinstance(exposure, TxAutoExpSettings) else "manual",
                resolution=settings.resolution,
                quality=settings.quality_name,
                pan=settings.pan,
                size=len(photo.data),
                elapsed_ms=elapsed_ms,
                exposure=asdict(exposure),
            )
            return CapturedPhoto(data=photo.data, metadata=metadata, auto_exp_result=auto_exp_result)

        captured = await self.session.run(
            _capture,
            "capture",
            timeout=timeout or self.config.photo_timeout,
        )
        self._count += 1
        self.logger.info(
            "photo_captured",
            size=captured.metadata.size,
            elapsed_ms=captured.metadata.elapsed_ms,
            quality=captured.metadata.quality,
            resolution=captured.metadata.resolution,
        )
        return captured

    async def stream(self, interval: float = 0.0, count: int | None = None) -> AsyncIterator[CapturedPhoto]:
        """Capture photos back to back."""
        taken = 0
        while count is None or taken < count:
            yield await self.capture()
            taken += 1
            if interval > 0:
                await asyncio.sleep(interval)

    @property
    def captures(self) -> int:
        return self._count
