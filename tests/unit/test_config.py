"""Tests for configuration module."""

import tempfile
from pathlib import Path

from framelink.config import (
    BleConfig,
    Config,
    DeviceConfig,
    RetryConfig,
    get_default_config,
    load_config,
)


class TestConfig:
    """Tests for Config class."""

    def test_default_config(self):
        """Test creating default configuration."""
        config = Config()

        assert config.device.name_filter == "frame"
        assert config.device.mode == "development"
        assert config.mock_mode is False
        assert config.ble.requested_mtu == 247
        assert config.ble.default_mtu == 23
        assert config.retry.max_connect_attempts == 3
        assert config.operation.conflict_policy == "queue"
        assert config.vision.overflow == "drop_oldest"

    def test_config_from_dict(self):
        """Test creating config from dictionary."""
        config = Config(
            device=DeviceConfig(name_filter="frame 4f", mode="production"),
            ble=BleConfig(requested_mtu=185),
            retry=RetryConfig(max_connect_attempts=5),
            mock_mode=True,
        )

        assert config.device.name_filter == "frame 4f"
        assert config.device.mode == "production"
        assert config.ble.requested_mtu == 185
        assert config.retry.max_connect_attempts == 5
        assert config.mock_mode is True

    def test_config_to_yaml(self):
        """Test saving config to YAML."""
        config = Config(device=DeviceConfig(name_filter="yaml-test"))

        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.yaml"
            config.to_yaml(path)

            assert path.exists()

            loaded = Config.from_yaml(path)
            assert loaded.device.name_filter == "yaml-test"

    def test_config_from_yaml(self):
        """Test loading config from YAML."""
        yaml_content = """
device:
  mode: production
camera:
  resolution: 720
  manual:
    shutter: 800
vision:
  api_endpoint: http://10.0.0.2:8000/process
  overflow: reject_new
"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.yaml"
            path.write_text(yaml_content)

            config = Config.from_yaml(path)

            assert config.device.mode == "production"
            assert config.camera.resolution == 720
            assert config.camera.manual.shutter == 800
            assert config.camera.auto.exposure == 0.1
            assert config.vision.api_endpoint == "http://10.0.0.2:8000/process"
            assert config.vision.overflow == "reject_new"

    def test_missing_yaml_gives_defaults(self, tmp_path):
        config = Config.from_yaml(tmp_path / "absent.yaml")

        assert config == Config()

    def test_default_config_dict(self):
        defaults = get_default_config()

        assert defaults["heartbeat"]["probe_reply"] == "ping"
        assert defaults["camera"]["quality_index"] == 4


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_default(self, tmp_path, monkeypatch):
        """Test loading default config when no file exists."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        config = load_config(config_path="/nonexistent/path.yaml")

        assert config.device.name_filter == "frame"

    def test_load_with_env_override(self, monkeypatch):
        """Test environment variable overrides."""
        monkeypatch.setenv("FRAMELINK_MOCK_MODE", "1")
        monkeypatch.setenv("FRAMELINK_API_ENDPOINT", "http://localhost:9000/process")

        config = load_config()

        assert config.mock_mode is True
        assert config.vision.api_endpoint == "http://localhost:9000/process"

    def test_env_override_disabled(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("FRAMELINK_API_ENDPOINT", "http://localhost:9000/process")

        config = load_config(config_path=tmp_path / "none.yaml", env_override=False)

        assert config.vision.api_endpoint == ""

    def test_load_from_file(self):
        """Test loading config from file."""
        yaml_content = """
retry:
  connect_retry_delay: 1.5
"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.yaml"
            path.write_text(yaml_content)

            config = load_config(config_path=path)
            assert config.retry.connect_retry_delay == 1.5
