"""Proxy configuration loading helpers."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .models import ErrorPolicy, NodeDescriptor, WeightedNode

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "pgbalance" / "config.toml"
CONFIG_ENV_VAR = "PGBALANCE_CONFIG"
DEFAULT_ERROR_LOG = Path("logs") / "errors_database.log"


class ConfigError(ValueError):
    """Raised when the configuration references something that does not exist."""


class NodeConfig(BaseModel):
    """Connection parameters for one server as stored in config.toml."""

    driver: str = "postgres"
    host: str = "localhost"
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    weight: int = Field(default=1, ge=0)
    init_commands: list[str] = Field(default_factory=list)

    def to_descriptor(self) -> NodeDescriptor:
        return NodeDescriptor(
            driver=self.driver,
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            database=self.database,
            weight=self.weight,
            init_commands=tuple(self.init_commands),
        )


class ProfileConfig(BaseModel):
    """A master/slaves topology."""

    master: NodeConfig
    slaves: dict[str, NodeConfig] = Field(default_factory=dict)

    def weighted_slaves(self) -> tuple[WeightedNode, ...]:
        return tuple(
            WeightedNode(node_id=name, weight=node.weight, descriptor=node.to_descriptor())
            for name, node in self.slaves.items()
        )


class ProxyConfig(BaseModel):
    """Shape of the proxy configuration file."""

    database: NodeConfig = Field(default_factory=NodeConfig)
    profile: str | None = None
    profiles: dict[str, ProfileConfig] = Field(default_factory=dict)
    debug_mode: bool = False
    error_policy: ErrorPolicy = ErrorPolicy.SWALLOW_AND_RETURN_SENTINEL
    error_log_path: Path = DEFAULT_ERROR_LOG
    connect_timeout: float = 5.0
    probe_slaves: bool = False

    @property
    def single_server(self) -> bool:
        """True when no master/slave profile is configured."""

        return self.profile is None

    def active_profile(self) -> ProfileConfig:
        """Return the configured master/slave profile."""

        if self.profile is None:
            raise ConfigError("No database profile configured.")
        try:
            return self.profiles[self.profile]
        except KeyError:
            raise ConfigError(f"Database profile '{self.profile}' not found.") from None

    def with_debug_mode(self, enabled: bool) -> ProxyConfig:
        """Return a copy with the debug flag updated."""

        return self.model_copy(update={"debug_mode": enabled})

    def with_error_policy(self, policy: ErrorPolicy) -> ProxyConfig:
        """Return a copy with the error policy updated."""

        return self.model_copy(update={"error_policy": policy})


def config_path() -> Path:
    """Resolve the config file location, honoring the environment override."""

    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return CONFIG_FILE


def load_config(path: Path | None = None) -> ProxyConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    target = path or config_path()
    try:
        with target.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return ProxyConfig()
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file", extra={"path": str(target), "error": str(exc)})
        return ProxyConfig()

    try:
        return ProxyConfig.model_validate(raw)
    except ValidationError as exc:
        LOG.warning("Ignoring invalid config file", extra={"path": str(target), "error": str(exc)})
        return ProxyConfig()


__all__ = [
    "CONFIG_ENV_VAR",
    "CONFIG_FILE",
    "ConfigError",
    "DEFAULT_ERROR_LOG",
    "NodeConfig",
    "ProfileConfig",
    "ProxyConfig",
    "config_path",
    "load_config",
]
