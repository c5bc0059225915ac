"""AWS client for the EC2, IAM, SSM and S3 calls the deployer needs."""

from typing import Any, cast

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from kubetest_ec2.core.exceptions import AWSError
from kubetest_ec2.utils.logging import get_logger
from kubetest_ec2.utils.retry import retry_on_exception

logger = get_logger(__name__)


# transport failures (timeouts, endpoint and credential errors) are BotoCoreError
BOTO_ERRORS = (ClientError, BotoCoreError)


def _error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return cast(str, error.response.get("Error", {}).get("Code", "Unknown"))
    return f"{type(error).__name__}: {error}"


class AWSClient:
    """Thin wrapper over boto3 service clients.

    Every method translates ``ClientError`` and ``BotoCoreError`` into
    ``AWSError`` so callers only deal with the project's exception
    hierarchy. Only idempotent reads are retried; mutating calls fail on the
    first error.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        profile: str | None = None,
        session: boto3.Session | None = None,
    ):
        """Initialize AWS client.

        Args:
            region: AWS region
            profile: AWS profile name (optional)
            session: Existing boto3 session (optional, overrides profile)
        """
        self.region = region
        self.profile = profile

        if session:
            self.session = session
        elif profile:
            self.session = boto3.Session(profile_name=profile, region_name=region)
        else:
            self.session = boto3.Session(region_name=region)

        self.ec2 = self.session.client("ec2")
        self.ec2_instance_connect = self.session.client("ec2-instance-connect")
        self.ssm = self.session.client("ssm")
        self.iam = self.session.client("iam")
        self.s3 = self.session.client("s3")

        logger.debug("aws_client_initialized", region=region, profile=profile)

    # SSM

    def get_parameter(self, name: str) -> str:
        """Read a parameter store value.

        Args:
            name: Parameter path

        Returns:
            Parameter value

        Raises:
            AWSError: If the parameter cannot be read
        """
        try:
            response = self.ssm.get_parameter(Name=name)
            return cast(str, response["Parameter"]["Value"])
        except BOTO_ERRORS as e:
            logger.error("ssm_get_parameter_failed", name=name, error_code=_error_code(e))
            raise AWSError(f"getting SSM parameter {name!r}: {_error_code(e)}") from e

    # EC2 images and instances

    def describe_image(self, image_id: str) -> dict[str, Any]:
        """Describe a machine image.

        Args:
            image_id: AMI id

        Returns:
            Image description

        Raises:
            AWSError: If the image cannot be described or does not exist
        """
        try:
            response = self.ec2.describe_images(ImageIds=[image_id])
        except BOTO_ERRORS as e:
            logger.error("describe_image_failed", image_id=image_id, error_code=_error_code(e))
            raise AWSError(
                f"describing image {image_id} in {self.region}: {_error_code(e)}"
            ) from e

        images = response.get("Images", [])
        if not images:
            raise AWSError(f"image {image_id} not found in {self.region}")
        return cast(dict[str, Any], images[0])

    def run_instance(self, request: dict[str, Any]) -> dict[str, Any]:
        """Create exactly one instance.

        Args:
            request: RunInstances keyword arguments

        Returns:
            Description of the created instance

        Raises:
            AWSError: If the instance cannot be created
        """
        try:
            response = self.ec2.run_instances(**request)
        except BOTO_ERRORS as e:
            logger.error("run_instances_failed", error_code=_error_code(e))
            raise AWSError(f"creating instance: {_error_code(e)}") from e
        return cast(dict[str, Any], response["Instances"][0])

    @retry_on_exception(exceptions=BOTO_ERRORS, max_attempts=3)
    def _describe_instances(self, **kwargs: Any) -> list[dict[str, Any]]:
        response = self.ec2.describe_instances(**kwargs)
        return [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

    def describe_instance(self, instance_id: str) -> dict[str, Any] | None:
        """Describe a single instance.

        Args:
            instance_id: Instance id

        Returns:
            Instance description, or None if EC2 does not know it

        Raises:
            AWSError: If the call keeps failing
        """
        try:
            instances = self._describe_instances(InstanceIds=[instance_id])
        except BOTO_ERRORS as e:
            raise AWSError(f"describing instance {instance_id}: {_error_code(e)}") from e
        return instances[0] if instances else None

    def find_instances_by_tag(self, key: str, value: str) -> list[dict[str, Any]]:
        """List non-terminated instances carrying a tag.

        Args:
            key: Tag key
            value: Tag value

        Returns:
            Instance descriptions

        Raises:
            AWSError: If the lookup fails
        """
        try:
            return self._describe_instances(
                Filters=[
                    {"Name": f"tag:{key}", "Values": [value]},
                    {
                        "Name": "instance-state-name",
                        "Values": ["pending", "running", "stopping", "stopped"],
                    },
                ]
            )
        except BOTO_ERRORS as e:
            raise AWSError(f"listing instances tagged {key}={value}: {_error_code(e)}") from e

    def wait_until_running(
        self, instance_id: str, timeout_seconds: int = 300, delay_seconds: int = 5
    ) -> None:
        """Block until EC2 reports the instance as running.

        Args:
            instance_id: Instance id
            timeout_seconds: Overall wait budget
            delay_seconds: Seconds between describe calls

        Raises:
            AWSError: If the instance is not running within the budget
        """
        waiter = self.ec2.get_waiter("instance_running")
        max_attempts = max(1, timeout_seconds // max(1, delay_seconds))
        try:
            waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig={"Delay": delay_seconds, "MaxAttempts": max_attempts},
            )
        except BOTO_ERRORS as e:
            raise AWSError(
                f"instance {instance_id} not running after {timeout_seconds}s: {e}"
            ) from e

    def terminate_instance(self, instance_id: str) -> None:
        """Terminate an instance.

        Args:
            instance_id: Instance id

        Raises:
            AWSError: If termination is rejected
        """
        try:
            self.ec2.terminate_instances(InstanceIds=[instance_id])
        except BOTO_ERRORS as e:
            raise AWSError(f"terminating instance {instance_id}: {_error_code(e)}") from e

    def disable_source_dest_check(self, network_interface_id: str) -> None:
        """Turn off source/destination checking on a network interface.

        Args:
            network_interface_id: ENI id

        Raises:
            AWSError: If the attribute cannot be modified
        """
        try:
            self.ec2.modify_network_interface_attribute(
                NetworkInterfaceId=network_interface_id,
                SourceDestCheck={"Value": False},
            )
        except BOTO_ERRORS as e:
            raise AWSError(
                f"disabling source/dest check on {network_interface_id}: {_error_code(e)}"
            ) from e

    def default_vpc_id(self) -> str:
        """Id of the region's default VPC.

        Raises:
            AWSError: If there is no default VPC
        """
        try:
            response = self.ec2.describe_vpcs(Filters=[{"Name": "isDefault", "Values": ["true"]}])
        except BOTO_ERRORS as e:
            raise AWSError(f"describing default VPC: {_error_code(e)}") from e
        vpcs = response.get("Vpcs", [])
        if not vpcs:
            raise AWSError(f"no default VPC found in {self.region}")
        return cast(str, vpcs[0]["VpcId"])

    def describe_subnets(self, vpc_id: str) -> list[dict[str, Any]]:
        """Subnets of a VPC.

        Args:
            vpc_id: VPC id

        Raises:
            AWSError: If the subnets cannot be listed
        """
        try:
            response = self.ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
        except BOTO_ERRORS as e:
            raise AWSError(f"describing subnets of {vpc_id}: {_error_code(e)}") from e
        return cast(list[dict[str, Any]], response.get("Subnets", []))

    # EC2 Instance Connect

    def send_ssh_public_key(
        self, instance_id: str, os_user: str, public_key: str, availability_zone: str
    ) -> None:
        """Push a public key that the instance accepts for about 60 seconds.

        Args:
            instance_id: Instance id
            os_user: Login user on the instance
            public_key: OpenSSH formatted public key
            availability_zone: Zone the instance runs in

        Raises:
            AWSError: If the key is rejected
        """
        try:
            self.ec2_instance_connect.send_ssh_public_key(
                InstanceId=instance_id,
                InstanceOSUser=os_user,
                SSHPublicKey=public_key,
                AvailabilityZone=availability_zone,
            )
        except BOTO_ERRORS as e:
            raise AWSError(
                f"sending SSH public key for {os_user} to {instance_id}: {_error_code(e)}"
            ) from e

    # IAM

    @retry_on_exception(exceptions=BOTO_ERRORS, max_attempts=3)
    def _list_roles(self, path_prefix: str) -> list[dict[str, Any]]:
        paginator = self.iam.get_paginator("list_roles")
        return [role for page in paginator.paginate(PathPrefix=path_prefix) for role in page["Roles"]]

    def list_roles(self, path_prefix: str) -> list[dict[str, Any]]:
        """All IAM roles under a path prefix.

        Raises:
            AWSError: If the roles cannot be listed
        """
        try:
            return self._list_roles(path_prefix)
        except BOTO_ERRORS as e:
            raise AWSError(f"listing roles under {path_prefix}: {_error_code(e)}") from e

    def create_role(self, role_name: str, path: str, assume_role_policy: str) -> dict[str, Any]:
        """Create an IAM role.

        Raises:
            AWSError: If the role cannot be created
        """
        try:
            response = self.iam.create_role(
                RoleName=role_name, Path=path, AssumeRolePolicyDocument=assume_role_policy
            )
        except BOTO_ERRORS as e:
            logger.error("create_role_failed", role_name=role_name, error_code=_error_code(e))
            raise AWSError(f"creating role {role_name}: {_error_code(e)}") from e
        return cast(dict[str, Any], response["Role"])

    def attach_role_policy(self, role_name: str, policy_arn: str) -> None:
        """Attach a managed policy to a role."""
        try:
            self.iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        except BOTO_ERRORS as e:
            raise AWSError(
                f"attaching {policy_arn} to role {role_name}: {_error_code(e)}"
            ) from e

    @retry_on_exception(exceptions=BOTO_ERRORS, max_attempts=3)
    def _list_instance_profiles(self, path_prefix: str) -> list[dict[str, Any]]:
        paginator = self.iam.get_paginator("list_instance_profiles")
        return [
            profile
            for page in paginator.paginate(PathPrefix=path_prefix)
            for profile in page["InstanceProfiles"]
        ]

    def list_instance_profiles(self, path_prefix: str) -> list[dict[str, Any]]:
        """All instance profiles under a path prefix.

        Raises:
            AWSError: If the profiles cannot be listed
        """
        try:
            return self._list_instance_profiles(path_prefix)
        except BOTO_ERRORS as e:
            raise AWSError(
                f"listing instance profiles under {path_prefix}: {_error_code(e)}"
            ) from e

    def create_instance_profile(self, profile_name: str, path: str) -> dict[str, Any]:
        """Create an instance profile."""
        try:
            response = self.iam.create_instance_profile(InstanceProfileName=profile_name, Path=path)
        except BOTO_ERRORS as e:
            raise AWSError(f"creating instance profile {profile_name}: {_error_code(e)}") from e
        return cast(dict[str, Any], response["InstanceProfile"])

    def list_instance_profiles_for_role(self, role_name: str) -> list[dict[str, Any]]:
        """Instance profiles a role is attached to."""
        try:
            response = self.iam.list_instance_profiles_for_role(RoleName=role_name)
        except BOTO_ERRORS as e:
            raise AWSError(
                f"listing instance profiles for role {role_name}: {_error_code(e)}"
            ) from e
        return cast(list[dict[str, Any]], response.get("InstanceProfiles", []))

    def add_role_to_instance_profile(self, profile_name: str, role_name: str) -> None:
        """Attach a role to an instance profile."""
        try:
            self.iam.add_role_to_instance_profile(
                InstanceProfileName=profile_name, RoleName=role_name
            )
        except BOTO_ERRORS as e:
            raise AWSError(
                f"adding role {role_name} to instance profile {profile_name}: {_error_code(e)}"
            ) from e

    # S3

    def head_bucket(self, bucket: str) -> None:
        """Check that a bucket exists and is reachable.

        Raises:
            AWSError: If the bucket cannot be reached
        """
        try:
            self.s3.head_bucket(Bucket=bucket)
        except BOTO_ERRORS as e:
            raise AWSError(f"unable to find bucket {bucket!r}: {_error_code(e)}") from e

    def list_object_keys(self, bucket: str, prefix: str) -> list[str]:
        """Keys of the first page of objects under a prefix.

        Raises:
            AWSError: If the bucket cannot be listed
        """
        try:
            response = self.s3.list_objects_v2(Bucket=bucket, Prefix=prefix)
        except BOTO_ERRORS as e:
            raise AWSError(f"listing {bucket}/{prefix}: {_error_code(e)}") from e
        return [item["Key"] for item in response.get("Contents", [])]
