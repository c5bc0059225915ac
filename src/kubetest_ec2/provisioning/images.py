"""Machine image resolution."""

import re
from dataclasses import dataclass

from kubetest_ec2.clients.aws_client import AWSClient
from kubetest_ec2.core.config import DEFAULT_AMD64_INSTANCE_TYPE, DEFAULT_ARM64_INSTANCE_TYPE
from kubetest_ec2.core.exceptions import AWSError, ImageResolutionError
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)

AMI_PREFIX = "ami-"
_AMI_PATTERN = re.compile(r"^ami-[0-9a-f]{8}([0-9a-f]{9})?$")

# parameter store paths per OS, formatted with the EC2 flavour of the architecture
SSM_IMAGE_PATHS = {
    "ubuntu2404": "/aws/service/canonical/ubuntu/server/24.04/stable/current/{arch}/hvm/ebs-gp3/ami-id",
    "ubuntu2204": "/aws/service/canonical/ubuntu/server/22.04/stable/current/{arch}/hvm/ebs-gp2/ami-id",
    "al2023": "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-{arch}",
}

_AMAZON_LINUX_ARCH = {"amd64": "x86_64", "arm64": "arm64"}


@dataclass(frozen=True)
class ResolvedImage:
    """A concrete image plus the instance type to run it on."""

    image_id: str
    instance_type: str
    os: str | None = None
    ssm_path: str | None = None


def ssm_path_for(os_name: str, arch: str) -> str:
    """Parameter store path holding the latest image for an OS and architecture.

    Args:
        os_name: Logical OS name (e.g. ``ubuntu2404``)
        arch: ``amd64`` or ``arm64``

    Returns:
        Parameter path

    Raises:
        ImageResolutionError: If the OS is not known
    """
    template = SSM_IMAGE_PATHS.get(os_name)
    if template is None:
        raise ImageResolutionError(
            f"unknown OS {os_name!r}, expected one of {', '.join(sorted(SSM_IMAGE_PATHS))}"
        )
    if os_name.startswith("al"):
        arch = _AMAZON_LINUX_ARCH.get(arch, arch)
    return template.format(arch=arch)


def validate_image_id(image_id: str) -> str:
    """Check an explicit image id has the ``ami-`` hex format.

    Raises:
        ImageResolutionError: If the id is malformed
    """
    if not _AMI_PATTERN.match(image_id):
        raise ImageResolutionError(f"invalid AMI id format for {image_id!r}")
    return image_id


class ImageResolver:
    """Turn a requested image (explicit id, OS name or nothing) into an AMI id."""

    def __init__(self, aws_client: AWSClient, default_os: str = "ubuntu2404"):
        """Initialize image resolver.

        Args:
            aws_client: AWS client used for parameter store lookups
            default_os: OS used when no image is requested
        """
        self.aws_client = aws_client
        self.default_os = default_os

    def resolve(self, requested: str, arch: str, instance_type: str) -> ResolvedImage:
        """Resolve the image to launch.

        Args:
            requested: ``ami-...`` id, logical OS name, or empty
            arch: Target architecture (``amd64`` or ``arm64``)
            instance_type: Requested instance type

        Returns:
            Concrete image id and effective instance type

        Raises:
            ImageResolutionError: If the id is malformed, the OS is unknown,
                or the parameter store lookup fails
        """
        if requested.startswith(AMI_PREFIX):
            return ResolvedImage(image_id=validate_image_id(requested), instance_type=instance_type)

        if requested and requested not in SSM_IMAGE_PATHS:
            raise ImageResolutionError(f"invalid AMI id format for {requested!r}")

        os_name = requested or self.default_os
        path = ssm_path_for(os_name, arch)
        logger.info("looking_up_image", os=os_name, arch=arch, ssm_path=path)
        try:
            image_id = self.aws_client.get_parameter(path)
        except AWSError as e:
            raise ImageResolutionError(f"error looking up image in SSM: {e}") from e
        validate_image_id(image_id)

        # the default instance type is amd64-only; pick its arm64 sibling
        if arch == "arm64" and instance_type == DEFAULT_AMD64_INSTANCE_TYPE:
            instance_type = DEFAULT_ARM64_INSTANCE_TYPE

        logger.info("image_resolved", image_id=image_id, instance_type=instance_type)
        return ResolvedImage(
            image_id=image_id, instance_type=instance_type, os=os_name, ssm_path=path
        )
