"""
Process configuration for Clawdbot.

All settings are loaded from environment variables with sensible defaults.
The agents/session configuration file lives in clawdbot.agents.config and
is loaded from ``config_path``.

Usage:
    from clawdbot.config import get_config
    cfg = get_config()
    print(cfg.gateway_url)   # "http://127.0.0.1:18789"
    print(cfg.state_dir)     # "/home/user/.clawdbot" or $CLAWDBOT_STATE_DIR
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _default_state_dir() -> Path:
    return Path.home() / ".clawdbot"


@dataclass(frozen=True)
class Config:
    """Top-level process configuration."""

    # Paths
    state_dir: Path = field(default_factory=_default_state_dir)
    config_path: Path = field(default_factory=lambda: _default_state_dir() / "clawdbot.yaml")

    # Gateway RPC
    gateway_url: str = "http://127.0.0.1:18789"
    gateway_token: str = ""

    # Control endpoint (FastAPI)
    control_host: str = "127.0.0.1"
    control_port: int = 18800
    control_token: str = ""

    @property
    def control_url(self) -> str:
        return f"http://{self.control_host}:{self.control_port}"


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    state_dir = Path(
        os.environ.get("CLAWDBOT_STATE_DIR", _default_state_dir())
    ).expanduser()
    config_path = Path(
        os.environ.get("CLAWDBOT_CONFIG_PATH", state_dir / "clawdbot.yaml")
    ).expanduser()

    return Config(
        state_dir=state_dir,
        config_path=config_path,
        gateway_url=os.environ.get("CLAWDBOT_GATEWAY_URL", "http://127.0.0.1:18789"),
        gateway_token=os.environ.get("CLAWDBOT_GATEWAY_TOKEN", ""),
        control_host=os.environ.get("CLAWDBOT_CONTROL_HOST", "127.0.0.1"),
        control_port=int(os.environ.get("CLAWDBOT_CONTROL_PORT", "18800")),
        control_token=os.environ.get("CLAWDBOT_CONTROL_TOKEN", ""),
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
