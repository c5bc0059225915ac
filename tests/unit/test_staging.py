"""Tests for staging location validation."""

from unittest.mock import MagicMock

import pytest

from kubetest_ec2.core.exceptions import AWSError, StagingError
from kubetest_ec2.provisioning.staging import StagingValidator


def bucket(contents: dict[str, list[str]]) -> MagicMock:
    """AWS client whose bucket holds keys grouped by listing prefix."""
    client = MagicMock()
    client.list_object_keys.side_effect = lambda name, prefix: list(contents.get(prefix, []))
    return client


class TestStagingValidator:
    """Tests for StagingValidator."""

    def test_location_required(self) -> None:
        """Test an empty location is rejected."""
        with pytest.raises(StagingError, match="location is required"):
            StagingValidator(MagicMock()).validate("", "v1.31.2")

    def test_version_required(self) -> None:
        """Test an empty version is rejected."""
        with pytest.raises(StagingError, match="version is required"):
            StagingValidator(MagicMock()).validate("bucket", "")

    def test_url_taken_on_trust(self) -> None:
        """Test URLs are not looked up."""
        client = MagicMock()
        StagingValidator(client).validate("https://dl.example.com/k8s", "v1.31.2")
        client.head_bucket.assert_not_called()

    def test_version_present(self) -> None:
        """Test an existing version prefix passes."""
        client = bucket({"v1.31.2": ["v1.31.2/bin/kubelet"]})
        StagingValidator(client).validate("bucket", "v1.31.2")
        client.head_bucket.assert_called_once_with("bucket")

    def test_directory_prefix_serves_version(self) -> None:
        """Test a shorter version directory satisfies a longer version."""
        client = bucket({"v": ["v1.30/bin/kubelet", "v1.31/bin/kubelet"]})
        StagingValidator(client).validate("bucket", "v1.31.2")

    def test_version_missing_lists_choices(self) -> None:
        """Test the error names the versions that do exist."""
        client = bucket({"v": ["v1.29.0/bin/kubelet", "v1.30.1/bin/kubelet"]})

        with pytest.raises(StagingError) as exc_info:
            StagingValidator(client).validate("bucket", "v1.31.2")

        message = str(exc_info.value)
        assert "version v1.31.2 is missing from bucket bucket" in message
        assert "v1.29.0" in message
        assert "v1.30.1" in message

    def test_equal_directory_is_not_a_prefix(self) -> None:
        """Test a directory must be strictly shorter than the version."""
        client = bucket({"v": ["v1.31.2x/bin/kubelet"]})
        with pytest.raises(StagingError):
            StagingValidator(client).validate("bucket", "v1.31.2")

    def test_bucket_unreachable(self) -> None:
        """Test lookup failures become StagingError."""
        client = MagicMock()
        client.head_bucket.side_effect = AWSError("unable to find bucket 'bucket': 404")
        with pytest.raises(StagingError, match="missing from bucket"):
            StagingValidator(client).validate("bucket", "v1.31.2")
