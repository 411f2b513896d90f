"""FrameLink - session protocol for Brilliant Labs Frame glasses over BLE."""

__version__ = "0.1.0"

from framelink.config import Config, load_config

__all__ = ["Config", "load_config", "__version__"]
