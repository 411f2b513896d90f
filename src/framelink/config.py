"""Configuration management for FrameLink."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeviceConfig(BaseModel):
    """Host-side device and logging configuration."""

    name_filter: str = "frame"
    mode: Literal["production", "development"] = "development"
    log_level: str = "INFO"


class BleConfig(BaseModel):
    """Bluetooth Low Energy link configuration."""

    service_uuid: str = "7a230001-5475-a6a4-654c-8431f6ad49c4"
    tx_char_uuid: str = "7a230002-5475-a6a4-654c-8431f6ad49c4"
    rx_char_uuid: str = "7a230003-5475-a6a4-654c-8431f6ad49c4"
    rssi_floor: int = -80
    scan_timeout: float = 15.0
    connect_timeout: float = 10.0
    bond: bool = True
    bond_timeout: float = 20.0
    requested_mtu: int = 247
    default_mtu: int = 23
    stabilize_delay: float = 0.5


class RetryConfig(BaseModel):
    """Connection retry and reconnection policy."""

    max_connect_attempts: int = 3
    connect_retry_delay: float = 5.0
    max_scan_attempts: int = 2
    scan_retry_delay: float = 5.0
    auto_reconnect: bool = True
    reconnect_delay: float = 5.0


class OperationConfig(BaseModel):
    """Operation serializer policy."""

    timeout: float = 30.0
    max_attempts: int = 3
    retry_delay: float = 2.0
    conflict_policy: Literal["queue", "reject"] = "queue"


class HeartbeatConfig(BaseModel):
    """Background liveness probing."""

    enabled: bool = True
    interval: float = 30.0
    probe_timeout: float = 5.0
    battery_poll_interval: float = 120.0
    probe_command: str = 'print("ping")'
    probe_reply: str = "ping"


class AutoExposureConfig(BaseModel):
    """Auto exposure defaults sent before a capture."""

    metering_index: int = 1  # 0 spot, 1 center weighted, 2 average
    exposure: float = 0.1
    exposure_speed: float = 0.45
    shutter_limit: int = 16383
    analog_gain_limit: int = 16
    white_balance_speed: float = 0.5
    rgb_gain_limit: int = 287


class ManualExposureConfig(BaseModel):
    """Manual exposure defaults sent before a capture."""

    shutter: int = 4096
    analog_gain: int = 1
    red_gain: int = 121
    green_gain: int = 64
    blue_gain: int = 140


class CameraConfig(BaseModel):
    """Photo capture configuration."""

    quality_index: int = 4
    resolution: int = 512
    pan: int = 0
    raw: bool = False
    length_prefixed: bool = False
    auto_exposure: bool = True
    photo_timeout: float = 15.0
    auto: AutoExposureConfig = Field(default_factory=AutoExposureConfig)
    manual: ManualExposureConfig = Field(default_factory=ManualExposureConfig)


class VisionConfig(BaseModel):
    """Vision API and frame queue configuration."""

    api_endpoint: str = ""
    process_frames: bool = False
    frames_to_queue: int = 5
    queue_size: int = 10
    overflow: Literal["drop_oldest", "reject_new"] = "drop_oldest"
    timeout: float = 30.0
    lines_per_page: int = 4
    tap_threshold: float = 0.3
    chars_per_line: int = 24


class Config(BaseSettings):
    """Main configuration for FrameLink."""

    model_config = SettingsConfigDict(
        env_prefix="FRAMELINK_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    device: DeviceConfig = Field(default_factory=DeviceConfig)
    ble: BleConfig = Field(default_factory=BleConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    operation: OperationConfig = Field(default_factory=OperationConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    camera: CameraConfig = Field(default_factory=CameraConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)

    mock_mode: bool = False

    @classmethod
    def from_yaml(cls, path: Path | str) -> "Config":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def to_yaml(self, path: Path | str) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)


def load_config(
    config_path: Path | str | None = None,
    env_override: bool = True,
) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Path to config file. If None, searches standard locations.
        env_override: Whether to allow environment variables to override config.

    Returns:
        Loaded configuration.
    """
    search_paths = [
        Path("/etc/framelink/config.yaml"),
        Path.home() / ".config" / "framelink" / "config.yaml",
        Path("config.yaml"),
        Path("configs/framelink.yaml"),
    ]

    if config_path:
        search_paths.insert(0, Path(config_path))

    config_file: Path | None = None
    for path in search_paths:
        if path.exists():
            config_file = path
            break

    if config_file:
        config = Config.from_yaml(config_file)
    else:
        config = Config()

    if env_override:
        endpoint = os.environ.get("FRAMELINK_API_ENDPOINT")
        if endpoint:
            config.vision.api_endpoint = endpoint

        if os.environ.get("FRAMELINK_MOCK_MODE", "").lower() in ("1", "true", "yes"):
            config.mock_mode = True

    return config


def get_default_config() -> dict[str, Any]:
    """Get default configuration as dictionary."""
    return Config().model_dump()
