"""Configuration management for History Bridge using Pydantic.

This module provides type-safe configuration models for the source export,
the ledger/target database, history retention, interceptors and logging.
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourceConfig(BaseModel):
    """Configuration for the source history export."""

    export_path: str | None = Field(
        default=None, description="Path to the exported source history (YAML or JSON)"
    )
    page_size: int = Field(
        default=500, ge=1, le=10000, description="Entities fetched per source page"
    )


class StateConfig(BaseModel):
    """Ledger and target database configuration."""

    db_path: str = Field(
        default="./history_migration.db",
        description="SQLite file path or full SQLAlchemy URL for ledger and target tables",
    )
    db_echo: bool = Field(default=False, description="Log SQL statements")
    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of connections to maintain in the pool (PostgreSQL only)",
    )
    db_max_overflow: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum number of connections to create beyond pool_size (PostgreSQL only)",
    )
    db_pool_timeout: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Timeout in seconds for getting a connection from the pool",
    )
    db_pool_recycle: int = Field(
        default=3600,
        ge=60,
        le=28800,
        description="Recycle connections after this many seconds",
    )

    @property
    def database_url(self) -> str:
        """Full SQLAlchemy URL for the configured database."""
        if "://" in self.db_path:
            return self.db_path
        return f"sqlite:///{self.db_path}"

    def ledger_exists(self) -> bool:
        """Whether the ledger database is already there.

        Only SQLite files can be checked; other databases are assumed present.
        """
        url = self.database_url
        if not url.startswith("sqlite:///"):
            return True
        path = url[len("sqlite:///") :]
        return path == ":memory:" or Path(path).exists()


class CleanupConfig(BaseModel):
    """History cleanup applied to entities that are auto-canceled or closed."""

    enabled: bool = Field(default=True, description="Compute history cleanup dates")
    ttl_days: int = Field(
        default=180, ge=0, le=36500, description="Retention in days added to the end date"
    )


class AutoCancelConfig(BaseModel):
    """Settings for history of entities still active in the source."""

    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)


class HistoryConfig(BaseModel):
    """History conversion settings."""

    partition_id: int = Field(
        default=4095, ge=1, le=8191, description="Partition id encoded into generated keys"
    )
    legacy_prefix: str = Field(
        default="c7-legacy", description="Prefix applied to migrated definition ids"
    )
    default_tenant: str = Field(
        default="<default>", description="Tenant used when the source entity has none"
    )
    variable_value_preview_size: int = Field(
        default=8191,
        ge=16,
        le=1_000_000,
        description="Maximum length of a variable value before it is stored as a preview",
    )
    auto_cancel: AutoCancelConfig = Field(default_factory=AutoCancelConfig)

    @field_validator("legacy_prefix")
    @classmethod
    def validate_legacy_prefix(cls, v: str) -> str:
        """Validate the prefix is not blank."""
        v = v.strip().rstrip("-")
        if not v:
            raise ValueError("legacy_prefix cannot be empty")
        return v


class InterceptorConfig(BaseModel):
    """A user-supplied conversion interceptor."""

    class_name: str = Field(..., description="Import path: 'package.module:Class' or dotted")
    enabled: bool = Field(default=True)
    properties: dict[str, object] = Field(
        default_factory=dict, description="Attributes set on the interceptor instance"
    )


class ConversionConfig(BaseModel):
    """Conversion pipeline configuration."""

    interceptors: list[InterceptorConfig] = Field(default_factory=list)
    disabled_builtin: list[str] = Field(
        default_factory=list,
        description="Names of built-in transformers to switch off (e.g. 'VariableTransformer')",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="WARNING",
        description="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    file_level: str = Field(
        default="DEBUG",
        description="File log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    format: str = Field(default="json", description="Log file format (json or console)")
    file: str | None = Field(default=None, description="Log file path (no file logging when unset)")

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class MigrationConfig(BaseSettings):
    """Main migration configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HISTORY_BRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    source: SourceConfig = Field(default_factory=SourceConfig, description="Source configuration")
    state: StateConfig = Field(default_factory=StateConfig, description="State configuration")
    history: HistoryConfig = Field(
        default_factory=HistoryConfig, description="History conversion configuration"
    )
    conversion: ConversionConfig = Field(
        default_factory=ConversionConfig, description="Conversion pipeline configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )


def load_config_from_yaml(config_path: str | Path) -> MigrationConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        MigrationConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    config_data = _expand_env_vars(config_data)

    return MigrationConfig(**config_data)


def _expand_env_vars(data: dict) -> dict:
    """Recursively expand environment variables in config dict.

    Supports ${VAR_NAME} syntax for environment variable substitution.

    Args:
        data: Configuration dictionary

    Returns:
        dict: Dictionary with expanded environment variables
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_name = data[2:-1]
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value
        return data
    else:
        return data


def save_config_to_yaml(config: MigrationConfig, output_path: str | Path) -> None:
    """Save configuration to YAML file.

    Args:
        config: Configuration to save
        output_path: Path to output YAML file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
