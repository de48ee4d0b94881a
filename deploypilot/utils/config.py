"""
Configuration management for DeployPilot.

Settings are layered, later sources winning:
built-in defaults, a YAML file, a ``.env`` file, then the process
environment. ``.env`` values never override variables that are already set.
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import dotenv_values

from deploypilot.core.exceptions import ConfigurationError

DEFAULT_CONFIG_FILE = "config.yaml"
MASK = "***"


def _mask(value: str) -> str:
    if not value:
        return "Not set"
    if len(value) <= 12:
        return MASK
    return f"{value[:4]}...{value[-4:]}"


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _parse_number(name: str, value: str, kind=float):
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


@dataclass
class SSHConfig:
    """Deployment target host settings"""
    host: str = ""
    port: int = 22
    user: str = "git"
    base_path: str = "/tmp"
    private_key: str = ""
    private_key_file: str = ""
    known_hosts_file: str = ""
    strict_host_key_checking: bool = True
    connect_timeout: float = 30.0
    command_timeout: float = 600.0
    git_host: str = "github.com"

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class InfisicalConfig:
    """Secret store settings"""
    base_url: str = ""
    service_token: str = ""
    timeout: float = 30.0


@dataclass
class CloudflareConfig:
    """DNS provider settings"""
    api_token: str = ""
    zone_id: str = ""
    ttl: int = 1
    proxied: bool = False


@dataclass
class DiscordConfig:
    """Notification webhook settings"""
    webhook_url: str = ""


@dataclass
class LoggerConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    """DeployPilot configuration"""
    ssh: SSHConfig = field(default_factory=SSHConfig)
    infisical: InfisicalConfig = field(default_factory=InfisicalConfig)
    cloudflare: CloudflareConfig = field(default_factory=CloudflareConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    logging: LoggerConfig = field(default_factory=LoggerConfig)
    secret_cache_ttl: float = 300.0
    ip_mappings: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """
        Create from a nested dictionary (the YAML layout).

        Raises:
            ConfigurationError: On unknown sections or keys
        """
        sections = {
            "ssh": SSHConfig,
            "infisical": InfisicalConfig,
            "cloudflare": CloudflareConfig,
            "discord": DiscordConfig,
            "logging": LoggerConfig,
        }
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key in sections:
                try:
                    kwargs[key] = sections[key](**(value or {}))
                except TypeError as e:
                    raise ConfigurationError(f"Invalid '{key}' section: {e}")
            elif key == "secret_cache_ttl":
                kwargs[key] = _parse_number(key, value)
            elif key == "ip_mappings":
                kwargs[key] = {str(k): str(v) for k, v in (value or {}).items()}
            else:
                raise ConfigurationError(f"Unknown config section: {key}")
        return cls(**kwargs)

    @property
    def has_secret_source(self) -> bool:
        return bool(self.infisical.base_url and self.infisical.service_token)

    @property
    def has_dns_provider(self) -> bool:
        return bool(self.cloudflare.api_token and self.cloudflare.zone_id)

    @property
    def has_notifier(self) -> bool:
        return bool(self.discord.webhook_url)

    def validate(self) -> None:
        """
        Check the settings a remote run needs.

        Raises:
            ConfigurationError: On the first missing or invalid setting
        """
        if not self.ssh.host:
            raise ConfigurationError("SSH host is required (set SSH_HOST or ssh.host)")
        if not self.ssh.user:
            raise ConfigurationError("SSH user is required (set SSH_USER or ssh.user)")
        if not 0 < self.ssh.port < 65536:
            raise ConfigurationError(f"SSH port out of range: {self.ssh.port}")
        if not self.ssh.base_path.startswith("/"):
            raise ConfigurationError(
                f"SSH base path must be absolute, got {self.ssh.base_path!r}"
            )
        if not self.ssh.private_key:
            raise ConfigurationError(
                "SSH private key is required (set SSH_PRIVATE_KEY or ssh.private_key_file)"
            )
        if self.ssh.connect_timeout <= 0 or self.ssh.command_timeout <= 0:
            raise ConfigurationError("SSH timeouts must be positive")
        if self.secret_cache_ttl <= 0:
            raise ConfigurationError("secret_cache_ttl must be positive")

    def sanitized(self) -> Dict[str, Any]:
        """Dictionary view with credentials masked, safe to print."""
        data = self.to_dict()
        data["ssh"]["private_key"] = "Set" if self.ssh.private_key else "Not set"
        data["infisical"]["service_token"] = _mask(self.infisical.service_token)
        data["cloudflare"]["api_token"] = _mask(self.cloudflare.api_token)
        data["discord"]["webhook_url"] = _mask(self.discord.webhook_url)
        return data


# (section, attribute, parser) per environment variable
ENV_OVERRIDES = {
    "SSH_HOST": ("ssh", "host", str),
    "SSH_PORT": ("ssh", "port", int),
    "SSH_USER": ("ssh", "user", str),
    "SSH_BASE_PATH": ("ssh", "base_path", str),
    "SSH_PRIVATE_KEY": ("ssh", "private_key", str),
    "SSH_PRIVATE_KEY_FILE": ("ssh", "private_key_file", str),
    "SSH_KNOWN_HOSTS_FILE": ("ssh", "known_hosts_file", str),
    "SSH_STRICT_HOST_KEY_CHECKING": ("ssh", "strict_host_key_checking", bool),
    "SSH_CONNECT_TIMEOUT": ("ssh", "connect_timeout", float),
    "COMMAND_TIMEOUT": ("ssh", "command_timeout", float),
    "INFISICAL_BASE_URL": ("infisical", "base_url", str),
    "INFISICAL_SERVICE_TOKEN": ("infisical", "service_token", str),
    "CLOUDFLARE_API_TOKEN": ("cloudflare", "api_token", str),
    "CLOUDFLARE_ZONE_ID": ("cloudflare", "zone_id", str),
    "DISCORD_WEBHOOK_URL": ("discord", "webhook_url", str),
    "LOG_LEVEL": ("logging", "level", str),
    "SECRET_CACHE_TTL": (None, "secret_cache_ttl", float),
}


class ConfigManager:
    """Loads DeployPilot configuration from file and environment"""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_file: Optional[Path] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize config manager

        Args:
            config_path: YAML config file (defaults to ./config.yaml if present)
            env_file: .env file (defaults to ./.env if present)
            environ: Environment mapping (defaults to os.environ)
        """
        self.explicit_path = config_path is not None
        self.config_path = Path(config_path) if config_path else Path(DEFAULT_CONFIG_FILE)
        self.env_file = Path(env_file) if env_file else Path(".env")
        self.environ = environ
        self._config: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        """Load configuration, caching the result"""
        if self._config is not None:
            return self._config

        config = AppConfig.from_dict(self._read_yaml())

        environ = dict(os.environ if self.environ is None else self.environ)
        if self.env_file.exists():
            for key, value in dotenv_values(self.env_file).items():
                if value is not None:
                    environ.setdefault(key, value)

        self._apply_env(config, environ)
        self._load_key_file(config)

        self._config = config
        return config

    def reload(self) -> AppConfig:
        self._config = None
        return self.load()

    def _read_yaml(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            if self.explicit_path:
                raise ConfigurationError(f"Config file not found: {self.config_path}")
            return {}

        try:
            with open(self.config_path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_path} must contain a mapping")
        return data

    @staticmethod
    def _apply_env(config: AppConfig, environ) -> None:
        for name, (section, attr, kind) in ENV_OVERRIDES.items():
            raw = environ.get(name)
            if raw is None or raw == "":
                continue

            if kind is bool:
                value = _parse_bool(name, raw)
            elif kind is str:
                value = raw
            else:
                value = _parse_number(name, raw, kind)

            target = getattr(config, section) if section else config
            setattr(target, attr, value)

    @staticmethod
    def _load_key_file(config: AppConfig) -> None:
        if config.ssh.private_key or not config.ssh.private_key_file:
            return
        path = Path(config.ssh.private_key_file).expanduser()
        try:
            config.ssh.private_key = path.read_text()
        except OSError as e:
            raise ConfigurationError(f"Failed to read SSH private key file {path}: {e}")
