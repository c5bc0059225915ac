"""Staging location and version validation."""

from kubetest_ec2.clients.aws_client import AWSClient
from kubetest_ec2.core.exceptions import AWSError, StagingError
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)


class StagingValidator:
    """Check that the staged artifacts for a version can be fetched at boot."""

    def __init__(self, aws_client: AWSClient):
        self.aws_client = aws_client

    def validate(self, location: str, version: str) -> None:
        """Validate a staging location and version.

        Locations that are URLs (``https://``, ``s3://``) are taken on trust.
        For bucket names the version prefix must exist, or a listed version
        directory must be a strict prefix of the requested version (so
        ``v1.31`` serves ``v1.31.2``).

        Args:
            location: Bucket name or URL
            version: Staged version, e.g. ``v1.31.2``

        Raises:
            StagingError: If the location or version is missing or unreachable
        """
        if not location:
            raise StagingError("a staging location is required")
        if not version:
            raise StagingError("a staging version is required")
        if "://" in location:
            logger.debug("staging_location_is_url", location=location)
            return

        try:
            self.aws_client.head_bucket(location)
            keys = self.aws_client.list_object_keys(location, version)
        except AWSError as e:
            raise StagingError(f"version {version} is missing from bucket {location}: {e}") from e

        if keys:
            logger.info("staging_version_found", bucket=location, version=version)
            return

        try:
            keys = self.aws_client.list_object_keys(location, "v")
        except AWSError as e:
            raise StagingError(f"unable to list items in bucket {location}: {e}") from e

        available: list[str] = []
        for key in keys:
            directory = key.split("/")[0]
            if directory in available:
                continue
            available.append(directory)
            if len(version) > len(directory) and version.startswith(directory):
                logger.info(
                    "staging_version_prefix_found",
                    bucket=location,
                    directory=directory,
                    version=version,
                )
                return

        raise StagingError(
            f"version {version} is missing from bucket {location}, "
            f"choose one of {sorted(available)}"
        )
