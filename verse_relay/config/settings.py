"""
config/settings.py — Central configuration via env vars + YAML override.

Priority: ENV > config.yaml > defaults

config.yaml sections map one-to-one onto the settings groups:

  obs:    OBS_*    session timeouts, idle sweep, restore policy, CLI defaults
  api:    API_*    HTTP bind address, API key, CORS
  store:  STORE_*  where stored connection records live
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class SectionSettings(BaseSettings):
    """
    One config.yaml section. Values from the YAML file arrive as init kwargs;
    environment variables are read first so they override them.
    """

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings, dotenv_settings, file_secret_settings


class OBSSettings(SectionSettings):
    default_url: str = Field("ws://localhost:4455", description="OBS WebSocket URL used when none is given")
    default_password: str = Field("", description="OBS WebSocket password used when none is given")
    default_source_name: str = Field("Bible Verse", description="OBS text input that receives verses")
    handshake_timeout: float = Field(10.0, description="Seconds allowed for Hello/Identify/Identified")
    request_timeout: float = Field(5.0, description="Seconds to wait for a request response")
    open_timeout: float = Field(10.0, description="Seconds allowed to open the socket")
    idle_sweep_interval: float = Field(600.0, description="Seconds between idle-session sweeps")
    idle_threshold: float = Field(1800.0, description="Close sessions idle for longer than this many seconds")
    restore_retries: int = Field(1, ge=0, description="Extra attempts per stored connection at startup")
    restore_retry_delay: float = Field(2.0, ge=0, description="Seconds between startup restore attempts")
    display_setup: bool = Field(True, description="Push initial text styling once a session is ready")

    model_config = SettingsConfigDict(env_prefix="OBS_")

    @field_validator("default_url")
    @classmethod
    def _ws_scheme(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("OBS URL must start with ws:// or wss://")
        return value

    @field_validator("handshake_timeout", "request_timeout", "open_timeout", "idle_sweep_interval", "idle_threshold")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


class APISettings(SectionSettings):
    host: str = Field("0.0.0.0", description="API server bind host")
    port: int = Field(3001, description="API server port")
    api_key: Optional[str] = Field(None, description="Bearer token for API auth (optional)")
    cors_origins: list[str] = Field(["http://localhost:5173"], description="CORS allowed origins")
    log_level: str = Field("info", description="Log level")

    model_config = SettingsConfigDict(env_prefix="API_")


class StoreSettings(SectionSettings):
    connections_file: Path = Field(Path("connections.yaml"), description="Stored OBS connection records")

    model_config = SettingsConfigDict(env_prefix="STORE_")


SECTIONS: dict[str, type[SectionSettings]] = {
    "obs": OBSSettings,
    "api": APISettings,
    "store": StoreSettings,
}


class Settings(BaseSettings):
    obs: OBSSettings = Field(default_factory=OBSSettings)
    api: APISettings = Field(default_factory=APISettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    config_file: Path = Field(Path("config.yaml"), description="Path to YAML config file")

    model_config = SettingsConfigDict(env_prefix="VERSE_RELAY_")

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings, merging YAML file if present."""
        path = Path(config_path or os.environ.get("VERSE_RELAY_CONFIG_FILE", "config.yaml"))
        yaml_data: dict = {}
        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

        # YAML values go in as init kwargs; SectionSettings lets env vars override them
        groups = {name: model(**(yaml_data.get(name) or {})) for name, model in SECTIONS.items()}
        return cls(**groups, config_file=path)

    def to_yaml(self, path: Path) -> None:
        data = {name: getattr(self, name).model_dump(mode="json") for name in SECTIONS}
        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reload_settings(config_path: Optional[Path] = None) -> Settings:
    global _settings
    _settings = Settings.load(config_path)
    return _settings
