"""Configuration module for meshbridge."""

from meshbridge.config.loader import get_config_path, load_config, save_config
from meshbridge.config.schema import AccountConfig, ChannelPolicy, Config, MqttConfig

__all__ = [
    "AccountConfig",
    "ChannelPolicy",
    "Config",
    "MqttConfig",
    "get_config_path",
    "load_config",
    "save_config",
]
