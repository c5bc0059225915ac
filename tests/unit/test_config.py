"""Tests for configuration management."""

from pathlib import Path

import pytest
import yaml

from kubetest_ec2.core.config import (
    DEFAULT_AMD64_INSTANCE_TYPE,
    ClusterShapeConfig,
    DeployerConfig,
    PollingConfig,
)
from kubetest_ec2.core.exceptions import ConfigurationError


def test_deployer_config_defaults():
    """Test deployer config defaults."""
    config = DeployerConfig()
    assert config.aws.region == "us-east-1"
    assert config.cluster.os == "ubuntu2404"
    assert config.cluster.instance_type == DEFAULT_AMD64_INSTANCE_TYPE
    assert config.cluster.num_workers == 0
    assert config.output.mirror_kubeconfig is True
    assert config.features.external_cloud_provider is False


def test_cluster_arch_accepts_platform_form():
    """Test build platform strings are reduced to the architecture."""
    assert ClusterShapeConfig(arch="linux/arm64").arch == "arm64"


def test_cluster_arch_rejects_unknown():
    """Test unknown architectures are rejected."""
    with pytest.raises(ValueError):
        ClusterShapeConfig(arch="riscv64")


def test_negative_workers_rejected():
    """Test worker count must not be negative."""
    with pytest.raises(ValueError):
        ClusterShapeConfig(num_workers=-1)


def test_polling_attempts_must_be_positive():
    """Test polling needs at least one attempt."""
    with pytest.raises(ValueError):
        PollingConfig(attempts=0)


def test_from_file(tmp_path: Path):
    """Test loading config from a YAML file."""
    data = {
        "aws": {"region": "eu-west-1"},
        "cluster": {"num_workers": 2, "arch": "arm64"},
        "staging": {"location": "my-bucket", "version": "v1.31.2"},
        "polling": {"attempts": 5, "interval_seconds": 1},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(data))

    config = DeployerConfig.from_file(path)

    assert config.aws.region == "eu-west-1"
    assert config.cluster.num_workers == 2
    assert config.cluster.arch == "arm64"
    assert config.staging.location == "my-bucket"
    assert config.polling.attempts == 5


def test_from_file_empty_uses_defaults(tmp_path: Path):
    """Test an empty file yields the default configuration."""
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert DeployerConfig.from_file(path) == DeployerConfig()


def test_from_file_missing():
    """Test loading a missing file raises ConfigurationError."""
    with pytest.raises(ConfigurationError, match="not found"):
        DeployerConfig.from_file("/nonexistent/config.yaml")


def test_from_file_invalid_values(tmp_path: Path):
    """Test invalid values raise ConfigurationError."""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"cluster": {"arch": "sparc"}}))
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        DeployerConfig.from_file(path)


def test_to_dict_round_trips():
    """Test to_dict output can rebuild the same configuration."""
    config = DeployerConfig()
    config.cluster.num_workers = 3
    assert DeployerConfig(**config.to_dict()) == config
