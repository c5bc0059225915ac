"""Pytest configuration and shared fixtures."""

from unittest.mock import MagicMock

import pytest

from kubetest_ec2.core.config import DeployerConfig, PollingConfig
from kubetest_ec2.core.models import ClusterSession, InstanceRecord, InstanceRole
from tests.fakes import FakeRunner, running_instance


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Remote runner where every command succeeds with empty output."""
    return FakeRunner()


@pytest.fixture
def deployer_config(tmp_path) -> DeployerConfig:
    """Configuration with tiny polling budgets and local output paths."""
    config = DeployerConfig()
    config.staging.location = "kt2-staging-bucket"
    config.staging.version = "v1.31.2"
    config.polling = PollingConfig(
        attempts=3,
        interval_seconds=0,
        running_timeout_seconds=1,
        running_poll_seconds=1,
        cloud_init_timeout_seconds=1,
        cloud_init_interval_seconds=0,
        node_wait_timeout_seconds=1,
        node_wait_interval_seconds=0,
    )
    config.output.kubeconfig_path = str(tmp_path / "kubeconfig")
    config.output.mirror_kubeconfig = False
    config.output.logs_dir = str(tmp_path / "logs")
    return config


@pytest.fixture
def cluster_session() -> ClusterSession:
    """Session with fixed identifiers."""
    return ClusterSession(
        cluster_id="kt2-abc12345",
        token="abcdef.0123456789abcdef",
        certificate_key="00" * 32,
        region="us-east-1",
        subnet_id="subnet-0123",
        vpc_id="vpc-0123",
    )


@pytest.fixture
def control_plane_record() -> InstanceRecord:
    """Control-plane instance record."""
    return InstanceRecord(instance_id="i-control", role=InstanceRole.CONTROL_PLANE)


@pytest.fixture
def worker_record() -> InstanceRecord:
    """Worker instance record."""
    return InstanceRecord(instance_id="i-worker", role=InstanceRole.WORKER)


@pytest.fixture
def mock_aws_client() -> MagicMock:
    """AWS client double whose instances are always running."""
    client = MagicMock()
    client.region = "us-east-1"
    client.describe_instance.side_effect = lambda instance_id: running_instance(instance_id)
    client.wait_until_running.return_value = None
    return client
