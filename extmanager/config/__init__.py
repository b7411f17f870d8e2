"""Configuration module"""

from extmanager.config.settings import (
    HOME_ENV_VAR,
    Settings,
    SettingsManager,
    default_home,
    load_settings,
    save_settings,
)

__all__ = [
    "HOME_ENV_VAR",
    "Settings",
    "SettingsManager",
    "default_home",
    "load_settings",
    "save_settings",
]
