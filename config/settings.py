"""
Configuration loader for the ChatRelay system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from models.schemas import BotConfig, ServerContext


@dataclass
class ServerConfig:
    url: str = "http://localhost:8080"    # our own externally reachable base URL
    api_key: str = ""                     # handed to the bot so it can call back


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./chatrelay.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                 # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                # directory for file backend


@dataclass
class ChannelConfig:
    type: str = "logging"                 # "whatsapp" | "logging"
    base_url: str = ""
    api_key: str = ""
    instance_name: str = "default"
    timeout: float = 30.0


@dataclass
class DispatchConfig:
    timeout: float = 60.0                 # seconds, blocking backend calls
    stream_idle_timeout: float = 120.0    # seconds between two stream frames


@dataclass
class Settings:
    app_name: str = "ChatRelay"
    debug: bool = False
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    bots: list[BotConfig] = field(default_factory=list)

    def get_bot(self, bot_id: str) -> Optional[BotConfig]:
        return next((b for b in self.bots if b.id == bot_id), None)

    def server_context(self) -> ServerContext:
        return ServerContext(
            server_url=self.server.url,
            api_key=self.server.api_key,
            instance_name=self.channel.instance_name,
        )


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CHATRELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "server" in raw:
            srv = raw["server"]
            settings.server = ServerConfig(
                url=srv.get("url", settings.server.url),
                api_key=srv.get("api_key", ""),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "channel" in raw:
            ch = raw["channel"]
            settings.channel = ChannelConfig(
                type=ch.get("type", "logging"),
                base_url=ch.get("base_url", ""),
                api_key=ch.get("api_key", ""),
                instance_name=ch.get("instance_name", "default"),
                timeout=ch.get("timeout", 30.0),
            )

        if "dispatch" in raw:
            dp = raw["dispatch"]
            settings.dispatch = DispatchConfig(
                timeout=dp.get("timeout", 60.0),
                stream_idle_timeout=dp.get("stream_idle_timeout", 120.0),
            )

        settings.bots = [BotConfig.model_validate(b) for b in raw.get("bots", [])]

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
