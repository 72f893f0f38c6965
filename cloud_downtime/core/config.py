"""Configuration management for the Cloud Downtime service."""

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


DEFAULT_AWS_REGIONS = ["us-east-2", "us-west-1", "us-west-2", "eu-west-1"]

REGION_PATTERN = r'^[a-z]{2,3}-[a-z]+-\d+$'
SUBSCRIPTION_PATTERN = r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Config(BaseModel):
    """Configuration model for the downtime scheduler."""

    tick_interval_seconds: int = Field(default=60, description="Seconds between reconciliation ticks")
    default_aws_region: str = Field(default="us-east-2", description="Region selected for new AWS sessions")
    aws_regions: List[str] = Field(default_factory=lambda: list(DEFAULT_AWS_REGIONS), description="Regions scanned by fleet discovery")
    azure_subscriptions: List[str] = Field(default_factory=list, description="Azure subscription ids attached to new Azure sessions")
    discovery_workers: int = Field(default=10, description="Concurrent per-region/subscription discovery queries")
    dispatch_workers: int = Field(default=4, description="Concurrent per-group start/stop dispatches within a tick")
    provider_call_timeout_seconds: int = Field(default=120, description="Per-group dispatch timeout within a tick")
    session_expiry_margin_seconds: int = Field(default=300, description="Treat sessions as expired this long before expiry")
    aws_session_duration_seconds: int = Field(default=3600, description="Lifetime requested for assumed-role sessions")
    data_dir: Optional[Path] = Field(default=None, description="Directory holding groups, windows and credentials")
    created_at: datetime = Field(default_factory=_utcnow, description="Configuration creation timestamp")
    version: str = Field(default="1.0.0", description="Configuration version")

    @field_validator('tick_interval_seconds', 'discovery_workers', 'dispatch_workers', 'provider_call_timeout_seconds')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Intervals, pool sizes and timeouts must be positive."""
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v

    @field_validator('session_expiry_margin_seconds')
    @classmethod
    def validate_margin(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"Expiry margin cannot be negative, got {v}")
        return v

    @field_validator('aws_session_duration_seconds')
    @classmethod
    def validate_session_duration(cls, v: int) -> int:
        """STS accepts role sessions between 15 minutes and 12 hours."""
        if not 900 <= v <= 43200:
            raise ValueError(f"AWS session duration must be between 900 and 43200 seconds, got {v}")
        return v

    @field_validator('default_aws_region')
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        if not re.match(REGION_PATTERN, v):
            raise ValueError(
                f"Invalid AWS region format: {v}. "
                "Expected format: us-east-1, eu-west-1, ap-southeast-3, etc."
            )
        return v

    @field_validator('aws_regions')
    @classmethod
    def validate_regions(cls, v: List[str]) -> List[str]:
        for region in v:
            if not re.match(REGION_PATTERN, region):
                raise ValueError(f"Invalid AWS region format: {region}")
        return v

    @field_validator('azure_subscriptions')
    @classmethod
    def validate_subscriptions(cls, v: List[str]) -> List[str]:
        for subscription_id in v:
            if not re.match(SUBSCRIPTION_PATTERN, subscription_id):
                raise ValueError(f"Invalid Azure subscription id: {subscription_id}")
        return v


class ConfigManager:
    """Manages the local configuration file."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Optional custom configuration directory path.
                       Defaults to ~/.cloud-downtime/
        """
        if config_dir is None:
            config_dir = Path.home() / ".cloud-downtime"

        self.config_dir = config_dir
        self.config_file = config_dir / "config.json"

        self.config_dir.mkdir(parents=True, exist_ok=True)

    def load_config(self) -> Optional[Config]:
        """Load configuration from file.

        Returns:
            Config object if file exists and is valid, None otherwise.

        Raises:
            ValueError: If configuration file is corrupted or invalid.
        """
        if not self.config_file.exists():
            return None

        try:
            with open(self.config_file, 'r') as f:
                config_data = json.load(f)

            if isinstance(config_data.get('created_at'), str):
                # Stored as UTC with a Z suffix, kept naive in memory
                dt_str = config_data['created_at'].replace('Z', '+00:00')
                dt_with_tz = datetime.fromisoformat(dt_str)
                config_data['created_at'] = dt_with_tz.replace(tzinfo=None)

            return Config(**config_data)

        except (json.JSONDecodeError, ValueError) as e:
            raise ValueError(f"Invalid configuration file: {e}")
        except Exception as e:
            raise ValueError(f"Failed to load configuration: {e}")

    def load_or_default(self) -> Config:
        """Load the configuration, falling back to defaults when none is saved."""
        return self.load_config() or Config()

    def save_config(self, config: Config) -> None:
        """Save configuration to file.

        Args:
            config: Configuration object to save.

        Raises:
            OSError: If unable to write configuration file.
        """
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            config_dict = config.model_dump(mode='json')
            config_dict['created_at'] = config.created_at.isoformat() + 'Z'

            with open(temp_file, 'w') as f:
                json.dump(config_dict, f, indent=2)

            temp_file.replace(self.config_file)

        except Exception as e:
            if temp_file.exists():
                temp_file.unlink()
            raise OSError(f"Failed to save configuration: {e}")

    def config_exists(self) -> bool:
        """Check if configuration file exists."""
        return self.config_file.exists()

    def get_config_path(self) -> Path:
        """Get the configuration file path."""
        return self.config_file

    def get_data_dir(self, config: Config) -> Path:
        """Directory holding the file-backed stores for this configuration."""
        return Path(config.data_dir) if config.data_dir else self.config_dir

    def delete_config(self) -> None:
        """Delete the configuration file.

        Raises:
            OSError: If unable to delete configuration file.
        """
        if self.config_file.exists():
            try:
                self.config_file.unlink()
            except Exception as e:
                raise OSError(f"Failed to delete configuration: {e}")
