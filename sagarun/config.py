"""
Configuration management for sagarun.

Configuration lives in ``$SAGARUN_HOME/config.yaml`` (default
``~/.config/sagarun/config.yaml``). An optional ``env_file`` entry is loaded
into the process environment with python-dotenv before the config is returned.
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


PLATFORM_TENANT_ID = "00000000-0000-0000-0000-000000000000"

LOCK_BACKENDS = ("memory", "redis")
PERSISTENCE_POLICIES = ("escalate", "warn")
LOG_FORMATS = ("structured", "pretty")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_sagarun_home() -> Path:
    """Return the sagarun home directory (``$SAGARUN_HOME`` or ``~/.config/sagarun``)."""
    home = os.environ.get("SAGARUN_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/sagarun").expanduser()


@dataclass
class SagarunConfig:
    """
    Engine configuration.

    Attributes:
        definitions_dir: Root of the spec store (platform/ and tenants/<id>/)
        state_dir: Where the file auditor keeps execution records
        default_tenant_id: Tenant used when the caller does not name one
        lock_backend: "memory" (single process) or "redis" (fleet-wide)
        redis_url: Redis connection URL for the redis lock backend
        lock_ttl_seconds: Expiry for redis locks, so a crashed holder cannot wedge a resource
        persistence_policy: "escalate" raises PersistenceError when records cannot be
            written after retries; "warn" logs and carries on
        persistence_retries: Attempts per ExecutionRecord write
        persistence_backoff_seconds: Initial backoff between write attempts
        log_level: Logging level
        log_format: "structured" (JSON) or "pretty" (rich console)
        log_file: Optional log file path
        env_file: Optional dotenv file loaded at config time
    """
    definitions_dir: str = "~/.config/sagarun/definitions"
    state_dir: str = "~/.local/state/sagarun"
    default_tenant_id: str = PLATFORM_TENANT_ID
    lock_backend: str = "memory"
    redis_url: Optional[str] = None
    lock_ttl_seconds: int = 300
    persistence_policy: str = "escalate"
    persistence_retries: int = 3
    persistence_backoff_seconds: float = 0.5
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate field values."""
        if self.lock_backend not in LOCK_BACKENDS:
            raise ConfigError(
                f"lock_backend must be one of {LOCK_BACKENDS}, got '{self.lock_backend}'"
            )
        if self.lock_backend == "redis" and not self.redis_url:
            raise ConfigError("redis_url is required when lock_backend is 'redis'")
        if self.persistence_policy not in PERSISTENCE_POLICIES:
            raise ConfigError(
                f"persistence_policy must be one of {PERSISTENCE_POLICIES}, "
                f"got '{self.persistence_policy}'"
            )
        if self.persistence_retries < 1:
            raise ConfigError("persistence_retries must be >= 1")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got '{self.log_format}'")

    @property
    def definitions_path(self) -> Path:
        return Path(self.definitions_dir).expanduser()

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @property
    def log_path(self) -> Optional[Path]:
        return Path(self.log_file).expanduser() if self.log_file else None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SagarunConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)


def load_config(config_path: Optional[Path] = None) -> SagarunConfig:
    """
    Load sagarun configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $SAGARUN_HOME/config.yaml

    Returns:
        SagarunConfig instance

    Raises:
        FileNotFoundError: If the config file is missing
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_sagarun_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"sagarun config.yaml not found at {config_path}. Run 'sagarun init' to create one."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")

    config = SagarunConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    return config
