"""
Configuration module for the safe delete engine.

Provides centralized configuration management for retention, locking,
restoration policy and the background reaper.
"""

import json
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

import pytz
import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, field_validator, model_validator


class ChecksumAlgorithm(str, Enum):
    """Supported checksum algorithms for snapshot integrity."""

    SHA256 = "sha256"
    SHA512 = "sha512"
    BLAKE2B = "blake2b"


class CollisionPolicy(str, Enum):
    """What to do when a restored identity is already in use."""

    REJECT = "reject"  # Surface IdentityCollision to the caller
    REMAP = "remap"  # Insert under a new identity and translate references


class SafeDeleteConfig(BaseModel):
    """Central configuration for the safe delete engine.

    Configuration Sources (in order of precedence):
        1. Programmatic settings (highest priority)
        2. Environment variables (SAFE_DELETE_ prefix)
        3. Configuration files (JSON or YAML)
        4. Default values (lowest priority)

    Example:
        >>> config = SafeDeleteConfig(retention_days=90, lock_timeout_seconds=5)

        Loading from environment:

        >>> import os
        >>> os.environ['SAFE_DELETE_RETENTION_DAYS'] = '14'
        >>> config = SafeDeleteConfig.from_env()

    Note:
        The retention window is captured on each manifest when it is created.
        Changing ``retention_days`` only affects deletions made afterwards.
    """

    # General settings
    application_name: str = Field(
        "Safe Delete Engine", description="Name of the application for activity logs"
    )
    environment: str = Field(
        "production",
        description="Environment (development, staging, production, testing)",
    )
    timezone: str = Field("UTC", description="Timezone used to display timestamps")
    database_url: Optional[str] = Field(
        None, description="SQLAlchemy URL of the primary database (CLI)"
    )
    registry_path: Optional[str] = Field(
        None, description="YAML/JSON file describing entity types (CLI)"
    )

    # Retention and reaper
    retention_days: int = Field(
        30, description="Days a deletion stays restorable before purge", gt=0
    )
    reaper_interval_seconds: float = Field(
        300.0, description="Seconds between reaper sweeps", gt=0
    )
    reaper_batch_size: int = Field(
        100, description="Manifests purged per reaper sweep", gt=0, le=10000
    )

    # Concurrency
    lock_timeout_seconds: float = Field(
        10.0, description="Bounded wait for advisory locks", gt=0
    )

    # Expansion
    max_expansion_depth: int = Field(
        256, description="Instance graph depth treated as a cycle", gt=0
    )

    # Snapshots and restoration
    checksum_algorithm: ChecksumAlgorithm = Field(
        ChecksumAlgorithm.SHA256, description="Algorithm for snapshot checksums"
    )
    collision_policy: CollisionPolicy = Field(
        CollisionPolicy.REJECT, description="Policy when a restored identity is taken"
    )
    retain_manifest_tombstones: bool = Field(
        True, description="Keep restored/purged manifest rows without snapshots"
    )

    # Deletion reasons
    require_reason: bool = Field(False, description="Require a deletion reason")
    reason_min_length: int = Field(
        10, description="Minimum length for deletion reasons", ge=1
    )

    # Listing
    default_page_size: int = Field(
        50, description="Default recycle bin page size", gt=0
    )
    max_page_size: int = Field(500, description="Largest allowed page size", gt=0)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "testing"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the timezone is a known IANA name."""
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def validate_page_sizes(self) -> "SafeDeleteConfig":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size cannot exceed max_page_size")
        return self

    @property
    def retention_window(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @property
    def tzinfo(self) -> Any:
        return pytz.timezone(self.timezone)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_env(cls, prefix: str = "SAFE_DELETE_") -> "SafeDeleteConfig":
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
                        config_dict[field_name] = field_type(value.lower())
                    else:
                        config_dict[field_name] = value
                except (ValueError, TypeError):
                    # Let model validation report the bad raw value
                    config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SafeDeleteConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: File path; ``.json`` is parsed as JSON, anything else as YAML

        Returns:
            Configuration instance
        """
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
        return cls.model_validate(data)


# Global configuration instance
_config: Optional[SafeDeleteConfig] = None


def get_config() -> SafeDeleteConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        _config = SafeDeleteConfig.from_env()

    return _config


def set_config(config: Optional[SafeDeleteConfig]) -> None:
    """
    Set (or reset, with None) the global configuration instance.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> SafeDeleteConfig:
    """
    Configure the engine with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = SafeDeleteConfig(**kwargs)
    else:
        config_dict = _config.to_dict()
        config_dict.update(kwargs)
        _config = SafeDeleteConfig(**config_dict)

    return _config
