"""
Configuration management for chunkbatch.

Loads and validates the config.yaml file from the chunkbatch home directory.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_HOME = "~/.config/chunkbatch"
LOG_FORMATS = ("pretty", "structured")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_chunkbatch_home() -> Path:
    """Return the chunkbatch home directory ($CHUNKBATCH_HOME or ~/.config/chunkbatch)."""
    home = os.environ.get("CHUNKBATCH_HOME")
    if home:
        return Path(home).expanduser()
    return Path(DEFAULT_HOME).expanduser()


@dataclass
class BatchConfig:
    """
    Engine configuration.

    Attributes:
        tracker_path: SQLite file holding execution history
        target_database: SQLite file the example SQL writer inserts into
        definitions_dir: Optional directory of extra job definitions
        default_chunk_size: Chunk size for steps that do not set one
        default_skip_limit: Skip limit for steps that do not set one
        default_retry_limit: Retry limit for steps that do not set one
        default_backoff_seconds: Initial backoff between chunk retries
        log_level: Logging level name
        log_format: "pretty" (rich console) or "structured" (JSON lines)
        log_file: Optional log file path
    """
    tracker_path: str
    target_database: str
    definitions_dir: Optional[str] = None
    default_chunk_size: int = 200
    default_skip_limit: int = 0
    default_retry_limit: int = 0
    default_backoff_seconds: float = 1.0
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None

    def __post_init__(self):
        self.tracker_path = str(Path(self.tracker_path).expanduser())
        self.target_database = str(Path(self.target_database).expanduser())
        if self.definitions_dir:
            self.definitions_dir = str(Path(self.definitions_dir).expanduser())
        if self.log_file:
            self.log_file = str(Path(self.log_file).expanduser())
        self.validate()

    def validate(self) -> None:
        """Validate value ranges."""
        if self.default_chunk_size < 1:
            raise ConfigError(f"default_chunk_size must be >= 1, got {self.default_chunk_size}")
        if self.default_skip_limit < 0:
            raise ConfigError(f"default_skip_limit must be >= 0, got {self.default_skip_limit}")
        if self.default_retry_limit < 0:
            raise ConfigError(f"default_retry_limit must be >= 0, got {self.default_retry_limit}")
        if self.default_backoff_seconds < 0:
            raise ConfigError("default_backoff_seconds must be >= 0")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got '{self.log_format}'")

    @classmethod
    def default(cls, home: Optional[Path] = None) -> "BatchConfig":
        """Defaults rooted at the chunkbatch home directory."""
        home = home or get_chunkbatch_home()
        return cls(
            tracker_path=str(home / "executions.db"),
            target_database=str(home / "target.db"),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        missing = [k for k in ("tracker_path", "target_database") if k not in data]
        if missing:
            raise ConfigError(f"Missing required config keys: {', '.join(missing)}")
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_config(config_path: Optional[Path] = None) -> BatchConfig:
    """
    Load chunkbatch configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $CHUNKBATCH_HOME/config.yaml

    Returns:
        BatchConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_chunkbatch_home() / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"chunkbatch config.yaml not found at {config_path}. Run 'chunkbatch init'."
        )

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")

    return BatchConfig.from_dict(data)
