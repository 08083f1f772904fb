"""Configuration management for infra-state."""

import json
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


REGION_PATTERN = r'^[a-z]{2,3}-[a-z]+-\d+$'


class BackendConfig(BaseModel):
    """Where the shared state lives and how it is protected."""

    model_config = ConfigDict(frozen=True)

    bucket: str = Field(..., description="S3 bucket holding state snapshots")
    lock_table: str = Field(..., description="DynamoDB table holding lock records")
    region: str = Field(default="us-east-1", description="AWS region of the backend")
    key_prefix: str = Field(default="", description="Key prefix for snapshot objects")
    encrypt: bool = Field(default=True, description="Enable server-side encryption on writes")
    kms_key_id: Optional[str] = Field(default=None, description="KMS key for aws:kms encryption")
    role_arn: Optional[str] = Field(default=None, description="IAM role to assume for backend access")

    @field_validator('bucket')
    @classmethod
    def validate_bucket(cls, v: str) -> str:
        """Validate S3 bucket naming rules."""
        if not re.match(r'^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$', v) or '..' in v:
            raise ValueError(
                f"Invalid S3 bucket name: {v}. "
                "Use 3-63 lowercase letters, digits, dots and hyphens."
            )
        return v

    @field_validator('lock_table')
    @classmethod
    def validate_lock_table(cls, v: str) -> str:
        """Validate DynamoDB table naming rules."""
        if not re.match(r'^[a-zA-Z0-9_.-]{3,255}$', v):
            raise ValueError(
                f"Invalid DynamoDB table name: {v}. "
                "Use 3-255 letters, digits, underscores, dots and hyphens."
            )
        return v

    @field_validator('region')
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        if not re.match(REGION_PATTERN, v):
            raise ValueError(
                f"Invalid AWS region format: {v}. "
                "Expected format: us-east-1, eu-west-1, ap-southeast-3, etc."
            )
        return v

    @field_validator('key_prefix')
    @classmethod
    def strip_prefix(cls, v: str) -> str:
        return v.strip('/')

    @field_validator('role_arn')
    @classmethod
    def validate_role_arn(cls, v: Optional[str]) -> Optional[str]:
        """Validate IAM role ARN format."""
        if v is None:
            return v
        arn_pattern = r'^arn:aws:iam::\d{12}:role/[a-zA-Z0-9+=,.@_/-]+$'
        if not re.match(arn_pattern, v):
            raise ValueError(
                f"Invalid IAM role ARN format: {v}. "
                "Expected format: arn:aws:iam::123456789012:role/RoleName"
            )
        return v


class InfraLocals(BaseModel):
    """Names and sizes shared by every resource descriptor.

    Passed explicitly to whoever builds descriptors; nothing reads these from
    module globals.
    """

    model_config = ConfigDict(frozen=True)

    ecr_repo_name: str = "demo-app-ecr-repo"
    cluster_name: str = "demo-app-cluster"
    availability_zones: List[str] = Field(
        default_factory=lambda: ["us-east-1a", "us-east-1b", "us-east-1c"]
    )
    task_family: str = "demo-app-task"
    task_name: str = "demo-app-task"
    container_port: int = Field(default=3000, ge=1, le=65535)
    task_cpu: int = 256
    task_memory: int = 512
    task_execution_role_name: str = "demo-app-task-execution-role"
    load_balancer_name: str = "demo-app-alb"
    target_group_name: str = "demo-alb-tg"
    service_name: str = "demo-app-service"
    desired_count: int = Field(default=3, ge=0)
    image_tag: str = "latest"

    @field_validator('availability_zones')
    @classmethod
    def validate_zones(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one availability zone is required")
        for zone in v:
            if not re.match(r'^[a-z]{2,3}-[a-z]+-\d+[a-z]$', zone):
                raise ValueError(f"Invalid availability zone: {zone}")
        return v


class Config(BaseModel):
    """Configuration model for the infra-state CLI."""

    backend: BackendConfig
    locals: InfraLocals = Field(default_factory=InfraLocals)
    state_id: str = Field(default="default", description="State identifier used when none is given")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Configuration creation timestamp")
    version: str = Field(default="1.0.0", description="Configuration version")

    @field_validator('state_id')
    @classmethod
    def validate_state_id(cls, v: str) -> str:
        if not re.match(r'^[a-zA-Z0-9][a-zA-Z0-9_.-]*$', v):
            raise ValueError(f"Invalid state identifier: {v}")
        return v


class ConfigManager:
    """Manages the local configuration file for the infra-state CLI."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Optional custom configuration directory path.
                       Defaults to ~/.infra-state/
        """
        if config_dir is None:
            config_dir = Path.home() / ".infra-state"

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
                dt_str = config_data['created_at'].replace('Z', '+00:00')
                config_data['created_at'] = datetime.fromisoformat(dt_str).replace(tzinfo=None)

            return Config(**config_data)

        except (json.JSONDecodeError, ValueError) as e:
            raise ValueError(f"Invalid configuration file: {e}")
        except Exception as e:
            raise ValueError(f"Failed to load configuration: {e}")

    def save_config(self, config: Config) -> None:
        """Save configuration to file.

        Args:
            config: Configuration object to save.

        Raises:
            OSError: If unable to write configuration file.
        """
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            config_dict = config.model_dump()
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
