"""config — Settings, env loading, YAML config."""
from .settings import APISettings, OBSSettings, Settings, StoreSettings, get_settings, reload_settings

__all__ = ["APISettings", "OBSSettings", "Settings", "StoreSettings", "get_settings", "reload_settings"]
