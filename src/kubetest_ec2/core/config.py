"""Configuration management for kubetest-ec2."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from kubetest_ec2.core.exceptions import ConfigurationError

DEFAULT_AMD64_INSTANCE_TYPE = "t3a.medium"
DEFAULT_ARM64_INSTANCE_TYPE = "t4g.medium"


class AWSConfig(BaseModel):
    """AWS configuration."""

    region: str = "us-east-1"
    profile: str | None = None
    role_name: str = "kubetest2-ec2-role"
    instance_profile: str = "kubetest2-ec2-instance-profile"


class ClusterShapeConfig(BaseModel):
    """Instances that make up the cluster."""

    image: str = ""  # explicit ami-* id, or empty to resolve from ``os``
    os: str = "ubuntu2404"
    arch: str = "amd64"
    instance_type: str = DEFAULT_AMD64_INSTANCE_TYPE
    num_workers: int = Field(default=0, ge=0)
    ssh_user: str = "ubuntu"
    ec2_instance_connect: bool = True
    ssh_key_prefix: str | None = None  # reuse ~/.ssh/<prefix> instead of generating a key

    @field_validator("arch")
    @classmethod
    def _normalize_arch(cls, value: str) -> str:
        # accept "linux/amd64" style build platforms
        arch = value.split("/")[-1]
        if arch not in ("amd64", "arm64"):
            raise ValueError(f"unsupported architecture: {value}")
        return arch


class StagingConfig(BaseModel):
    """Where prebuilt cluster binaries were staged."""

    location: str = ""  # bucket name, s3:// or https:// URL
    version: str = ""


class UserDataConfig(BaseModel):
    """Overrides for the embedded boot templates."""

    user_data_file: str | None = None
    kubeadm_init_file: str | None = None
    kubeadm_join_file: str | None = None


class FeaturesConfig(BaseModel):
    """Cluster features wired into the boot templates."""

    feature_gates: str = ""
    runtime_config: str = ""
    external_cloud_provider: bool = False
    external_cloud_provider_image: str = ""
    external_load_balancer: bool = False
    nvidia_device_plugin: bool = False


class PollingConfig(BaseModel):
    """Readiness polling budgets."""

    attempts: int = Field(default=30, ge=1)
    interval_seconds: float = Field(default=15.0, ge=0)
    running_timeout_seconds: int = 300
    running_poll_seconds: int = 5
    cloud_init_timeout_seconds: int = 300
    cloud_init_interval_seconds: float = 10.0
    node_wait_timeout_seconds: int = 300
    node_wait_interval_seconds: float = 10.0


class OutputConfig(BaseModel):
    """Where results are written locally."""

    kubeconfig_path: str | None = None
    mirror_kubeconfig: bool = True
    logs_dir: str = "_artifacts/logs"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"
    output: str = "stderr"


class DeployerConfig(BaseModel):
    """Main kubetest-ec2 configuration."""

    aws: AWSConfig = Field(default_factory=AWSConfig)
    cluster: ClusterShapeConfig = Field(default_factory=ClusterShapeConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    userdata: UserDataConfig = Field(default_factory=UserDataConfig)
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "DeployerConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            DeployerConfig instance

        Raises:
            ConfigurationError: If file cannot be loaded or parsed
        """
        config_path = Path(path).expanduser()

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with config_path.open() as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation
        """
        return self.model_dump()
