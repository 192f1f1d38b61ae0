"""
Configuration package.

Environment settings (dotenv) and per-bot YAML definitions.
"""

from reconciler.config.config import Settings, env_bool
from reconciler.config.bots import BotConfig, MarketInfo, load_bot_configs

__all__ = [
    "Settings",
    "env_bool",
    "BotConfig",
    "MarketInfo",
    "load_bot_configs",
]
