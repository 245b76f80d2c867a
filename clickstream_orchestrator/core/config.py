"""Configuration management for the clickstream stack orchestrator."""

import json
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from clickstream_orchestrator.core.exceptions import ConfigurationError


DEFAULT_CAPABILITIES = ['CAPABILITY_IAM', 'CAPABILITY_NAMED_IAM', 'CAPABILITY_AUTO_EXPAND']


class OrchestratorConfig(BaseModel):
    """Configuration model for stack dispatch and pipeline validation."""

    default_region: str = Field(default="us-east-1", description="Region used when a command or pipeline names none")
    role_arn: Optional[str] = Field(default=None, description="IAM role assumed for provider calls")
    min_rate_minutes: int = Field(default=6, ge=1, description="Smallest accepted rate(N minutes) schedule")
    cron_min_interval_ms: int = Field(default=360000, ge=0, description="Smallest accepted gap between cron firings")
    cron_occurrences: int = Field(default=10, ge=2, description="Number of cron firings inspected")
    access_log_prefix: str = Field(default="clickstream", description="Bucket prefix load balancer logs are written to")
    stack_capabilities: List[str] = Field(default_factory=lambda: list(DEFAULT_CAPABILITIES))
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Configuration creation timestamp")
    version: str = Field(default="1.0.0", description="Configuration version")

    @field_validator('role_arn')
    @classmethod
    def validate_role_arn(cls, v: Optional[str]) -> Optional[str]:
        """Validate IAM role ARN format."""
        if v is None:
            return v
        arn_pattern = r'^arn:aws(-cn|-us-gov)?:iam::\d{12}:role/[a-zA-Z0-9+=,.@_/-]+$'
        if not re.match(arn_pattern, v):
            raise ValueError(
                f"Invalid IAM role ARN format: {v}. "
                "Expected format: arn:aws:iam::123456789012:role/RoleName"
            )
        return v

    @field_validator('default_region')
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        region_pattern = r'^[a-z]{2}(-gov)?-[a-z]+-\d$'
        if not re.match(region_pattern, v):
            raise ValueError(
                f"Invalid AWS region format: {v}. "
                "Expected format: us-east-1, eu-west-1, cn-northwest-1, etc."
            )
        return v

    @field_validator('access_log_prefix')
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        return v.strip('/')


class ConfigManager:
    """Manages the local configuration file for the orchestrator."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Optional custom configuration directory path.
                       Defaults to ~/.clickstream-orchestrator/
        """
        if config_dir is None:
            config_dir = Path.home() / ".clickstream-orchestrator"

        self.config_dir = config_dir
        self.config_file = config_dir / "config.json"

        self.config_dir.mkdir(parents=True, exist_ok=True)

    def load_config(self) -> Optional[OrchestratorConfig]:
        """Load configuration from file.

        Returns:
            OrchestratorConfig if the file exists and is valid, None otherwise.

        Raises:
            ConfigurationError: If the configuration file is corrupted or invalid.
        """
        if not self.config_file.exists():
            return None

        try:
            with open(self.config_file, 'r') as f:
                config_data = json.load(f)

            if isinstance(config_data.get('created_at'), str):
                dt_str = config_data['created_at'].replace('Z', '+00:00')
                config_data['created_at'] = datetime.fromisoformat(dt_str).replace(tzinfo=None)

            return OrchestratorConfig(**config_data)

        except (json.JSONDecodeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration file: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def load_or_default(self) -> OrchestratorConfig:
        """Load configuration, falling back to defaults when no file exists."""
        return self.load_config() or OrchestratorConfig()

    def save_config(self, config: OrchestratorConfig) -> None:
        """Save configuration to file.

        Args:
            config: Configuration object to save.

        Raises:
            ConfigurationError: If unable to write the configuration file.
        """
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            config_dict = config.model_dump()
            config_dict['created_at'] = config.created_at.isoformat() + 'Z'

            with open(temp_file, 'w') as f:
                json.dump(config_dict, f, indent=2)

            temp_file.replace(self.config_file)

        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise ConfigurationError(f"Failed to save configuration: {e}")

    def config_exists(self) -> bool:
        return self.config_file.exists()

    def get_config_path(self) -> Path:
        return self.config_file
