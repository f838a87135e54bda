"""
Configuration management for shardctl.

Loads and validates $SHARDCTL_HOME/config.yaml. Secrets (the database
password) are read from an optional .env file referenced by `env_file`.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from shardctl.errors import ConfigError


PASSWORD_ENV_VAR = "SHARDCTL_DB_PASSWORD"

LOG_FORMATS = ("structured", "pretty")


def get_shardctl_home() -> Path:
    """Return the shardctl home directory (SHARDCTL_HOME or ~/.config/shardctl)."""
    home = os.environ.get("SHARDCTL_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/shardctl").expanduser()


@dataclass
class ShardctlConfig:
    """
    Runtime configuration for the control plane.

    Attributes:
        topology_file: Path to the declarative topology (YAML or JSON)
        compose_file: Where `generate` writes the docker-compose document
        compose_project: docker compose project name (-p)
        image: Container image used for every node
        probe_timeout_s: Overall readiness deadline per node
        registration_timeout_s: Deadline for a register call to show up in the live node list
        drain_timeout_s: Deadline for a drain to reach zero shard placements
        max_register_attempts: Register attempts before a worker is marked Failed
        backoff_initial_s: First retry/poll delay
        backoff_max_s: Retry/poll delay cap
        max_parallel: Worker pool size (0 = one thread per worker)
        rebalance_after_add: Start a rebalance after Converge registers new workers
        log_level: DEBUG, INFO, WARNING, ERROR
        log_format: "structured" (JSON) or "pretty" (rich console)
        log_file: Log file path, or None for console only
        env_file: Optional dotenv file loaded before reading secrets
    """
    topology_file: str = "topology.yaml"
    compose_file: str = "docker-compose.yml"
    compose_project: str = "shardctl"
    image: str = "citusdata/citus:12.1"
    probe_timeout_s: float = 180.0
    registration_timeout_s: float = 60.0
    drain_timeout_s: float = 3600.0
    max_register_attempts: int = 5
    backoff_initial_s: float = 1.0
    backoff_max_s: float = 30.0
    max_parallel: int = 0
    rebalance_after_add: bool = False
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def validate(self) -> None:
        """Validate value ranges."""
        for name in ("probe_timeout_s", "registration_timeout_s", "drain_timeout_s"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.max_register_attempts < 1:
            raise ConfigError("max_register_attempts must be >= 1")
        if self.backoff_initial_s <= 0 or self.backoff_max_s < self.backoff_initial_s:
            raise ConfigError("backoff_initial_s must be positive and <= backoff_max_s")
        if self.max_parallel < 0:
            raise ConfigError("max_parallel must be >= 0")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")
        if self.drain_timeout_s <= self.probe_timeout_s:
            raise ConfigError("drain_timeout_s must be larger than probe_timeout_s")

    @property
    def database_password(self) -> Optional[str]:
        """Database password from the environment (after env_file is loaded)."""
        return os.environ.get(PASSWORD_ENV_VAR)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML output."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShardctlConfig":
        """Build a config, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {unknown}")
        config = cls(**data)
        config.validate()
        return config


def load_config(config_path: Optional[Path] = None) -> ShardctlConfig:
    """
    Load shardctl configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $SHARDCTL_HOME/config.yaml

    Returns:
        ShardctlConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_shardctl_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"shardctl config.yaml not found at {config_path}. Run 'shardctl init'."
        )

    try:
        raw = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must contain a mapping")

    config = ShardctlConfig.from_dict(raw)

    if config.env_file:
        load_dotenv(Path(config.env_file).expanduser(), override=False)

    return config
