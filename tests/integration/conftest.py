"""Integration test fixtures and configuration."""

import os

import boto3
import pytest
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError


@pytest.fixture
def aws_test_region() -> str:
    """AWS region for integration tests."""
    return os.getenv("AWS_TEST_REGION", "us-east-1")


@pytest.fixture
def skip_if_no_aws_credentials(aws_test_region: str):
    """Skip test if AWS credentials are not available."""
    try:
        sts = boto3.client("sts", region_name=aws_test_region)
        sts.get_caller_identity()
    except (NoCredentialsError, ClientError, BotoCoreError) as e:
        pytest.skip(f"AWS credentials not available: {e}")


@pytest.fixture
def staging_location() -> str | None:
    """Bucket holding staged binaries (optional)."""
    return os.getenv("KUBETEST_STAGING_LOCATION")


@pytest.fixture
def staging_version() -> str | None:
    """Staged Kubernetes version (optional)."""
    return os.getenv("KUBETEST_STAGING_VERSION")
