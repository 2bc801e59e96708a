"""Configuration system for ConvoBridge.

Supports loading from YAML files, dicts, or programmatic construction via
Pydantic models. ``${VAR}`` references in YAML are expanded from the
environment, and the ElevenLabs credentials fall back to the usual
environment variables when left empty.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from convobridge.core.errors import ConvoBridgeError

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def expand_env(text: str) -> str:
    """Replace ``${VAR}`` references with environment values (empty if unset)."""
    return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), text)


class ServerConfig(BaseModel):
    """Where the bridge listens for the telephony provider."""

    listen_host: str = "0.0.0.0"
    listen_port: int = 8000
    listen_path: str = "/media-stream"
    # Public host used in the TwiML stream URL; defaults to the request Host
    public_host: str = ""


class AgentConfig(BaseModel):
    """Conversational AI (ElevenLabs ConvAI) settings."""

    agent_id: str = ""
    api_key: str = ""
    ws_url: str = "wss://api.elevenlabs.io/v1/convai/conversation"
    api_base: str = "https://api.elevenlabs.io"
    connect_timeout_seconds: float = 10.0
    # Query parameter carrying the caller's number on the upstream URL
    caller_query_param: str = "caller_id"


class RelayConfig(BaseModel):
    """Per-session relay settings."""

    # Bound on each direction's outbound queue; the oldest frame is dropped
    # when a stalled peer lets it fill up
    queue_size: int = Field(default=500, ge=1)
    # How long teardown waits for already-queued frames to be sent
    drain_timeout_seconds: float = Field(default=1.0, ge=0.0)


class FinalizerConfig(BaseModel):
    """Post-call finalization settings."""

    enabled: bool = True
    grace_period_seconds: float = Field(default=5.0, ge=0.0)
    request_timeout_seconds: float = 10.0
    tool_name: str = ""  # only count tool calls with this name; empty = any


class ProvisioningConfig(BaseModel):
    """Address provisioning backend."""

    backend: str = "memory"  # memory | http
    url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}


class BridgeConfig(BaseModel):
    """Top-level ConvoBridge configuration.

    Examples:
        # Programmatic
        config = BridgeConfig(agent=AgentConfig(agent_id="agent_123"))

        # From YAML
        config = BridgeConfig.from_yaml("convobridge.yaml")

        # Shorthand
        config = BridgeConfig.from_dict({
            "agent_id": "agent_123",
            "listen_port": 8000,
        })
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    finalizer: FinalizerConfig = Field(default_factory=FinalizerConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> BridgeConfig:
        """Load configuration from a YAML file, expanding ``${VAR}`` references."""
        path = Path(path)
        text = expand_env(path.read_text())
        data = yaml.safe_load(text) or {}
        return cls._from_raw(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BridgeConfig:
        """Load configuration from a dictionary.

        Supports both the full nested format and a flat shorthand format:

        Full format:
            {"server": {"listen_port": 8000}, "agent": {"agent_id": "..."}}

        Shorthand format:
            {"listen_port": 8000, "agent_id": "..."}
        """
        return cls._from_raw(dict(data))

    @classmethod
    def _from_raw(cls, data: dict[str, Any]) -> BridgeConfig:
        """Normalize and construct config from a raw dict."""
        flat_mappings = {
            "listen_host": ("server", "listen_host"),
            "listen_port": ("server", "listen_port"),
            "listen_path": ("server", "listen_path"),
            "public_host": ("server", "public_host"),
            "agent_id": ("agent", "agent_id"),
            "api_key": ("agent", "api_key"),
            "agent_ws_url": ("agent", "ws_url"),
            "queue_size": ("relay", "queue_size"),
            "grace_period_seconds": ("finalizer", "grace_period_seconds"),
            "provisioning_url": ("provisioning", "url"),
            "log_level": ("logging", "level"),
        }

        for flat_key, (section, nested_key) in flat_mappings.items():
            if flat_key in data:
                section_data = dict(data.get(section) or {})
                section_data[nested_key] = data.pop(flat_key)
                data[section] = section_data

        config = cls(**data)
        config.apply_env_defaults()
        return config

    def apply_env_defaults(self) -> None:
        """Fill empty credentials from the environment."""
        if not self.agent.agent_id:
            self.agent.agent_id = os.environ.get("ELEVENLABS_AGENT_ID", "")
        if not self.agent.api_key:
            self.agent.api_key = os.environ.get("ELEVENLABS_API_KEY", "")

    def validate_required(self) -> None:
        """Raise if settings the bridge cannot run without are missing."""
        if not self.agent.agent_id:
            raise ConvoBridgeError(
                "Missing agent.agent_id (or ELEVENLABS_AGENT_ID in the environment)"
            )
        if self.provisioning.backend == "http" and not self.provisioning.url:
            raise ConvoBridgeError("provisioning.backend is 'http' but provisioning.url is empty")


def load_config(source: str | Path | dict[str, Any] | BridgeConfig) -> BridgeConfig:
    """Load a BridgeConfig from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, or an existing BridgeConfig.

    Returns:
        A BridgeConfig instance.
    """
    if isinstance(source, BridgeConfig):
        return source
    if isinstance(source, dict):
        return BridgeConfig.from_dict(source)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if path.exists() and path.suffix in (".yaml", ".yml"):
            return BridgeConfig.from_yaml(path)
        raise FileNotFoundError(f"Config file not found: {path}")
    raise TypeError(f"Cannot load config from {type(source)}")


# Default YAML template for `convobridge init`
DEFAULT_CONFIG_YAML = """\
# ConvoBridge Configuration

server:
  listen_host: 0.0.0.0
  listen_port: 8000
  listen_path: /media-stream
  public_host: ""             # host used in the TwiML stream URL (default: request Host)

agent:
  agent_id: "${ELEVENLABS_AGENT_ID}"
  api_key: "${ELEVENLABS_API_KEY}"
  ws_url: wss://api.elevenlabs.io/v1/convai/conversation
  api_base: https://api.elevenlabs.io
  connect_timeout_seconds: 10

relay:
  queue_size: 500             # per direction; oldest frame dropped when full
  drain_timeout_seconds: 1    # flush window for queued frames at hang-up

finalizer:
  enabled: true
  grace_period_seconds: 5     # wait before fetching the transcript
  request_timeout_seconds: 10
  tool_name: ""               # only count this tool; empty = any

provisioning:
  backend: memory             # memory | http
  url: ""
  api_key: ""

logging:
  level: INFO
  json: false
"""
