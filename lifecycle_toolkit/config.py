"""
Configuration module for the Data Lifecycle Toolkit.

Provides centralized configuration management for retention enforcement,
purge execution, legal holds and compliance reporting.
"""

import json
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

from pydantic import BaseModel, Field, field_validator


class LifecycleConfig(BaseModel):
    """Central configuration for the purge engine.

    Configuration Sources (in order of precedence):
        1. Programmatic settings (highest priority)
        2. Environment variables (LIFECYCLE_ prefix)
        3. Configuration files (JSON or YAML)
        4. Default values (lowest priority)

    Example:
        >>> config = LifecycleConfig(
        ...     database_url="postgresql://lifecycle@db/lifecycle",
        ...     page_size=500,
        ... )

        Loading from environment:

        >>> import os
        >>> os.environ['LIFECYCLE_PAGE_SIZE'] = '250'
        >>> config = LifecycleConfig.from_env()

        Loading from file:

        >>> config = LifecycleConfig.from_file('lifecycle.yaml')

    Note:
        Retention periods themselves are not configuration; they live in
        retention policies managed through the PolicyStore. The settings here
        only control how the engine enforces them.
    """

    # General settings
    application_name: str = Field(
        "Data Lifecycle Engine", description="Name of the application for audit trails"
    )
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )
    log_level: str = Field("INFO", description="Root log level used by the CLI")

    # Persistence
    database_url: str = Field(
        "sqlite:///./lifecycle.db",
        description="SQLAlchemy URL for policies, holds, audit entries and jobs",
    )

    # Purge execution
    page_size: int = Field(
        100, description="Records fetched per page from a category store", gt=0, le=10000
    )
    operation_timeout_seconds: float = Field(
        30.0, description="Timeout for a single archive, delete or audit call", gt=0
    )
    max_retries: int = Field(
        3, description="Retries for transient per-record failures", ge=0, le=10
    )
    retry_backoff_seconds: float = Field(
        0.5, description="Base delay between retries (doubles per attempt)", ge=0
    )
    lock_ttl_minutes: int = Field(
        240, description="Minutes before an abandoned category lock may be taken over", gt=0
    )
    audit_spool_path: str = Field(
        "./audit_spool",
        description="Directory for audit entries awaiting replay after a failed append",
    )

    # Scheduling cadence
    short_ttl_threshold_hours: int = Field(
        72, description="Retention at or below this is considered short-TTL", gt=0
    )
    short_ttl_cadence_minutes: int = Field(
        60, description="Expected purge cadence for short-TTL categories", gt=0
    )
    long_ttl_cadence_minutes: int = Field(
        1440, description="Expected purge cadence for long-TTL categories", gt=0
    )
    scheduled_run_hour_utc: int = Field(
        2, description="Hour (UTC) of the daily scheduled purge", ge=0, le=23
    )

    # Compliance reporting
    failure_rate_review_threshold: float = Field(
        5.0, description="Failure rate (percent) above which a category needs review", ge=0
    )

    # Category wiring
    category_factory: Optional[str] = Field(
        None,
        description="'module:callable' that registers purgeable categories",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "validation", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is one the logging module understands."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(valid_levels))}")
        return v.upper()

    @field_validator("category_factory")
    @classmethod
    def validate_category_factory(cls, v: Optional[str]) -> Optional[str]:
        """Category factories are referenced as 'module:callable'."""
        if v is not None and ":" not in v:
            raise ValueError("category_factory must look like 'package.module:function'")
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump()

    @property
    def lock_ttl(self) -> timedelta:
        return timedelta(minutes=self.lock_ttl_minutes)

    def cadence_for(self, retention_period: timedelta) -> timedelta:
        """
        Expected purge cadence for a category with the given retention.

        Short-TTL categories are expected hourly by default, long-TTL
        categories daily.

        Args:
            retention_period: Retention period of the category's policy

        Returns:
            Maximum expected interval between completed purge runs
        """
        if retention_period <= timedelta(hours=self.short_ttl_threshold_hours):
            return timedelta(minutes=self.short_ttl_cadence_minutes)
        return timedelta(minutes=self.long_ttl_cadence_minutes)

    @classmethod
    def from_env(cls, prefix: str = "LIFECYCLE_") -> "LifecycleConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        import os

        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var in os.environ:
                value = os.environ[env_var]

                field_type = field_info.annotation

                # Handle Optional types
                if get_origin(field_type) is Union:
                    args = get_args(field_type)
                    field_type = next(
                        (arg for arg in args if arg is not type(None)), str
                    )

                try:
                    if field_type == bool:
                        config_dict[field_name] = value.lower() in (
                            "true",
                            "1",
                            "yes",
                            "on",
                        )
                    elif field_type == int:
                        config_dict[field_name] = int(value)
                    elif field_type == float:
                        config_dict[field_name] = float(value)
                    elif isinstance(field_type, type) and issubclass(field_type, Enum):
                        config_dict[field_name] = field_type(value)
                    else:
                        config_dict[field_name] = value
                except (ValueError, TypeError):
                    # Let pydantic report the invalid raw value
                    config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "LifecycleConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: Path to a .json, .yaml or .yml file

        Returns:
            Configuration instance
        """
        file_path = Path(path)
        with open(file_path, "r", encoding="utf-8") as f:
            if file_path.suffix.lower() in (".yaml", ".yml"):
                import yaml

                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {file_path} must contain a mapping")

        return cls.model_validate(data)


# Global configuration instance
_config: Optional[LifecycleConfig] = None


def get_config() -> LifecycleConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        try:
            _config = LifecycleConfig.from_env()
        except ValueError:
            _config = LifecycleConfig.model_validate({})

    return _config


def set_config(config: Optional[LifecycleConfig]) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set, or None to reload from the environment
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> LifecycleConfig:
    """
    Configure the toolkit with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = LifecycleConfig(**kwargs)
    else:
        config_dict = _config.to_dict()
        config_dict.update(kwargs)
        _config = LifecycleConfig(**config_dict)

    return _config
