"""Configuration for the LLMule client.

Simple configuration loader from environment variables (a ``.env`` file in
the working directory is honoured). Also supports a persistent file-based
configuration holding the API key obtained during registration.
"""

import json
import logging
import os
import platform
from dataclasses import dataclass, asdict
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# =============================================================================
# Persistent Configuration (File-based)
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory for llmule."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    data_dir = base / "llmule"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_config_path() -> Path:
    """Get the path to the config file."""
    return get_data_dir() / "config.json"


@dataclass
class LLMuleConfig:
    """Persistent client configuration."""
    api_key: str = ""

    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to disk."""
        config_path = path or get_config_path()
        with open(config_path, "w") as f:
            json.dump(asdict(self), f, indent=2)
        try:
            os.chmod(config_path, 0o600)
        except OSError:
            logger.debug("Could not restrict permissions on %s", config_path)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "LLMuleConfig":
        """Load configuration from disk."""
        config_path = path or get_config_path()
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    data = json.load(f)
                return cls(api_key=data.get("api_key", ""))
            except (json.JSONDecodeError, KeyError, AttributeError):
                logger.warning("Ignoring unreadable config file %s", config_path)
        return cls()


# =============================================================================
# Environment Variable Configuration
# =============================================================================

def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, str(default))
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name, str(default))
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Returns:
        dict with configuration values
    """
    load_dotenv()
    return {
        # Network
        "SERVER_URL": os.getenv("SERVER_URL", "ws://localhost:3000/llm-network"),
        "API_URL": os.getenv("API_URL", "http://localhost:3000"),
        "API_KEY": os.getenv("API_KEY", ""),
        "USER_ID": os.getenv("USER_ID", ""),
        "PROVIDER_NAME": os.getenv("PROVIDER_NAME", ""),

        # Local backends (EXO is only queried when configured)
        "OLLAMA_URL": os.getenv("OLLAMA_URL", "http://localhost:11434"),
        "LMSTUDIO_URL": os.getenv("LMSTUDIO_URL", "http://localhost:1234/v1"),
        "EXO_URL": os.getenv("EXO_URL", ""),

        # Request handling
        "MAX_CONCURRENT_MODELS": _env_int("MAX_CONCURRENT_MODELS", 2),
        "DEFAULT_TEMPERATURE": _env_float("DEFAULT_TEMPERATURE", 0.7),
        "DEFAULT_MAX_TOKENS": _env_int("DEFAULT_MAX_TOKENS", 4096),
        "BACKEND_TIMEOUT": _env_float("BACKEND_TIMEOUT", 120.0),

        # Session timings (seconds)
        "CONNECT_TIMEOUT": _env_float("CONNECT_TIMEOUT", 15.0),
        "RECONNECT_DELAY": _env_float("RECONNECT_DELAY", 5.0),
        "MAX_RECONNECT_ATTEMPTS": _env_int("MAX_RECONNECT_ATTEMPTS", 5),
        "DISCOVERY_RETRY_DELAY": _env_float("DISCOVERY_RETRY_DELAY", 10.0),
        "HEARTBEAT_INTERVAL": _env_float("HEARTBEAT_INTERVAL", 15.0),
        "STALE_AFTER": _env_float("STALE_AFTER", 45.0),
        "SHUTDOWN_GRACE": _env_float("SHUTDOWN_GRACE", 5.0),
    }


@dataclass
class SessionSettings:
    """Tunables for the session state machine and dispatcher."""
    server_url: str = "ws://localhost:3000/llm-network"
    user_id: str = ""
    provider: str = ""
    max_concurrency: int = 2
    default_temperature: float = 0.7
    default_max_tokens: int = 4096
    connect_timeout: float = 15.0
    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 5
    discovery_retry_delay: float = 10.0
    heartbeat_interval: float = 15.0
    stale_after: float = 45.0  # three missed intervals
    send_timeout: float = 5.0
    shutdown_grace: float = 5.0

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if self.stale_after <= self.heartbeat_interval:
            raise ValueError("stale_after must be longer than heartbeat_interval")

    @classmethod
    def from_config(cls, config: Optional[dict] = None, **overrides) -> "SessionSettings":
        """Build settings from ``load_config()`` output, with keyword overrides."""
        config = config if config is not None else load_config()
        values = dict(
            server_url=config["SERVER_URL"],
            user_id=config["USER_ID"],
            provider=config["PROVIDER_NAME"],
            max_concurrency=config["MAX_CONCURRENT_MODELS"],
            default_temperature=config["DEFAULT_TEMPERATURE"],
            default_max_tokens=config["DEFAULT_MAX_TOKENS"],
            connect_timeout=config["CONNECT_TIMEOUT"],
            reconnect_delay=config["RECONNECT_DELAY"],
            max_reconnect_attempts=config["MAX_RECONNECT_ATTEMPTS"],
            discovery_retry_delay=config["DISCOVERY_RETRY_DELAY"],
            heartbeat_interval=config["HEARTBEAT_INTERVAL"],
            stale_after=config["STALE_AFTER"],
            shutdown_grace=config["SHUTDOWN_GRACE"],
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
