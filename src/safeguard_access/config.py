"""
Configuration management for the Safeguard access layer.

Settings come from a JSON file, from SAFEGUARD_* environment variables, or
from keyword arguments, in increasing order of precedence.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def get_int_env(name: str, default: int) -> int:
    """Get an integer from environment variable, with fallback to default."""
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_bool_env(name: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(name, "").lower()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


APP_NAME = "safeguard-access"

# Environment variables used to hand a session to another process
TOKEN_ENV_VAR = "SAFEGUARD_ACCESS_TOKEN"
TOKEN_EXPIRES_ENV_VAR = "SAFEGUARD_ACCESS_TOKEN_EXPIRES"

# rSTS provider scopes
LOCAL_PROVIDER_SCOPE = "rsts:sts:primaryproviderid:local"
CERTIFICATE_PROVIDER_SCOPE = "rsts:sts:primaryproviderid:certificate"

DEFAULT_API_VERSION = "v4"
DEFAULT_REDIRECT_PORT = 8400

# Timing constants (seconds)
REQUEST_TIMEOUT = get_int_env("SAFEGUARD_REQUEST_TIMEOUT", 30)
LEADER_CACHE_SECONDS = get_int_env("SAFEGUARD_LEADER_CACHE_SECONDS", 10)
POLL_INTERVAL = get_int_env("SAFEGUARD_POLL_INTERVAL", 1)
REFRESH_MARGIN = 60  # renew this long before the token expires
MIN_REFRESH_INTERVAL = 5  # never re-arm the renewal timer faster than this
REDIRECT_WAIT_TIMEOUT = get_int_env("SAFEGUARD_REDIRECT_WAIT_TIMEOUT", 300)

# Event stream constants
EVENT_QUEUE_SIZE = get_int_env("SAFEGUARD_EVENT_QUEUE_SIZE", 100)
RECONNECT_DELAY = 1  # seconds - initial delay between reconnection attempts
RECONNECT_DELAY_MAX = 60  # seconds - maximum backoff delay
RECONNECT_BACKOFF_FACTOR = 2  # multiplier for each failed attempt
HEARTBEAT_INTERVAL = get_int_env("SAFEGUARD_HEARTBEAT_INTERVAL", 30)
WS_CONNECT_TIMEOUT = get_int_env("SAFEGUARD_WS_CONNECT_TIMEOUT", 30)


def get_app_dir() -> Path:
    """Get the per-user configuration directory."""
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return Path(base) / APP_NAME


def get_config_path() -> Path:
    """Get the path to the config file."""
    return get_app_dir() / "config.json"


def get_log_path() -> Path:
    """Get the path to the log file."""
    return get_app_dir() / "logs" / "safeguard-access.log"


@dataclass
class ClientConfig:
    """Settings for one client handle."""
    appliance_url: str = ""
    api_version: str = DEFAULT_API_VERSION
    verify_ssl: bool = True
    ca_bundle: str = ""
    request_timeout: float = REQUEST_TIMEOUT
    leader_cache_seconds: float = LEADER_CACHE_SECONDS
    poll_interval: float = POLL_INTERVAL
    redirect_port: int = DEFAULT_REDIRECT_PORT
    redirect_cert: Optional[str] = None
    redirect_key: Optional[str] = None
    event_queue_size: int = EVENT_QUEUE_SIZE
    default_headers: dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"

    @property
    def redirect_uri(self) -> str:
        """Redirect target registered with the authorization request."""
        scheme = "https" if self.redirect_cert else "http"
        return f"{scheme}://localhost:{self.redirect_port}/callback"

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        d = {
            "appliance_url": self.appliance_url,
            "api_version": self.api_version,
            "verify_ssl": self.verify_ssl,
            "request_timeout": self.request_timeout,
            "leader_cache_seconds": self.leader_cache_seconds,
            "poll_interval": self.poll_interval,
            "redirect_port": self.redirect_port,
            "event_queue_size": self.event_queue_size,
            "log_level": self.log_level,
        }
        if self.ca_bundle:
            d["ca_bundle"] = self.ca_bundle
        if self.redirect_cert:
            d["redirect_cert"] = self.redirect_cert
            d["redirect_key"] = self.redirect_key
        if self.default_headers:
            d["default_headers"] = self.default_headers
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "ClientConfig":
        """Create config from dictionary."""
        return cls(
            appliance_url=data.get("appliance_url", ""),
            api_version=data.get("api_version", DEFAULT_API_VERSION),
            verify_ssl=data.get("verify_ssl", True),
            ca_bundle=data.get("ca_bundle", ""),
            request_timeout=data.get("request_timeout", REQUEST_TIMEOUT),
            leader_cache_seconds=data.get("leader_cache_seconds", LEADER_CACHE_SECONDS),
            poll_interval=data.get("poll_interval", POLL_INTERVAL),
            redirect_port=data.get("redirect_port", DEFAULT_REDIRECT_PORT),
            redirect_cert=data.get("redirect_cert"),
            redirect_key=data.get("redirect_key"),
            event_queue_size=data.get("event_queue_size", EVENT_QUEUE_SIZE),
            default_headers=data.get("default_headers", {}),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def from_env(cls, base: Optional["ClientConfig"] = None) -> "ClientConfig":
        """Overlay SAFEGUARD_* environment variables on top of *base*."""
        config = base or cls()
        config.appliance_url = os.environ.get("SAFEGUARD_APPLIANCE", config.appliance_url)
        config.api_version = os.environ.get("SAFEGUARD_API_VERSION", config.api_version)
        config.verify_ssl = get_bool_env("SAFEGUARD_VERIFY_SSL", config.verify_ssl)
        config.ca_bundle = os.environ.get("SAFEGUARD_CA_BUNDLE", config.ca_bundle)
        config.redirect_port = get_int_env("SAFEGUARD_REDIRECT_PORT", config.redirect_port)
        return config

    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        config_path = path or get_config_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ClientConfig":
        """Load configuration from file, or return defaults if not found."""
        config_path = path or get_config_path()
        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = json.load(f)
                return cls.from_dict(data)
            except (json.JSONDecodeError, IOError):
                # Return defaults if config is corrupted
                pass
        return cls()
