"""EC2 instance creation."""

import base64
import random
import uuid
from typing import Any

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from kubetest_ec2.clients.aws_client import AWSClient
from kubetest_ec2.core.exceptions import AWSError, InstanceLaunchError, ProvisioningError
from kubetest_ec2.core.models import ClusterSession, ImageSpec, InstanceRecord
from kubetest_ec2.provisioning.iam import RoleProvisioner
from kubetest_ec2.provisioning.userdata import UserDataComposer
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)

ROOT_VOLUME_SIZE_GB = 50
ROOT_VOLUME_TYPE = "gp3"

ROLE_TAG_KEY = "kubetest2-ec2/role"

# zones known not to offer the instance types used here
SKIPPED_AVAILABILITY_ZONES = frozenset({"us-east-1e"})


def cluster_tag_key(cluster_id: str) -> str:
    """Tag key marking an instance as a member of a cluster."""
    return f"kubernetes.io/cluster/{cluster_id}"


def pick_subnet(aws_client: AWSClient) -> tuple[str, str]:
    """Pick a random subnet of the default VPC.

    Args:
        aws_client: AWS client

    Returns:
        Tuple of (subnet id, VPC id)

    Raises:
        InstanceLaunchError: If there is no default VPC or no usable subnet
    """
    try:
        vpc_id = aws_client.default_vpc_id()
        subnets = aws_client.describe_subnets(vpc_id)
    except AWSError as e:
        raise InstanceLaunchError(f"selecting subnet: {e}") from e

    candidates = [
        subnet["SubnetId"]
        for subnet in subnets
        if subnet.get("AvailabilityZone") not in SKIPPED_AVAILABILITY_ZONES
    ]
    if not candidates:
        raise InstanceLaunchError(f"no subnets found in the default VPC {vpc_id}")

    subnet_id = random.choice(candidates)
    logger.info("subnet_selected", vpc_id=vpc_id, subnet_id=subnet_id, candidates=len(candidates))
    return subnet_id, vpc_id


def _not_running(instance: dict[str, Any] | None) -> bool:
    return instance is None or instance.get("State", {}).get("Name") != "running"


def _last_result(retry_state: RetryCallState) -> dict[str, Any] | None:
    outcome = retry_state.outcome
    if outcome is None or outcome.failed:
        return None
    return outcome.result()


class InstanceLauncher:
    """Create one instance per :class:`ImageSpec`."""

    def __init__(
        self,
        aws_client: AWSClient,
        roles: RoleProvisioner | None = None,
        wait_attempts: int = 30,
        wait_interval: float = 5.0,
    ):
        """Initialize instance launcher.

        Args:
            aws_client: AWS client
            roles: Resolves instance profile names to ARNs
            wait_attempts: Describe calls made while waiting for addresses
            wait_interval: Seconds between those calls
        """
        self.aws_client = aws_client
        self.roles = roles or RoleProvisioner(aws_client)
        self.wait_attempts = wait_attempts
        self.wait_interval = wait_interval

    def build_request(
        self,
        spec: ImageSpec,
        session: ClusterSession,
        root_device_name: str,
        instance_profile_arn: str | None = None,
    ) -> dict[str, Any]:
        """Build the RunInstances arguments for one instance.

        Args:
            spec: What to launch
            session: Session providing cluster id, subnet and control-plane IP
            root_device_name: Root device of the image
            instance_profile_arn: Instance profile to attach, if any

        Returns:
            RunInstances keyword arguments

        Raises:
            UnresolvedPlaceholderError: If the user data still has placeholders
        """
        name = session.cluster_id + uuid.uuid4().hex[:8]
        request: dict[str, Any] = {
            "InstanceType": spec.instance_type,
            "ImageId": spec.image_id,
            "MinCount": 1,
            "MaxCount": 1,
            "MetadataOptions": {"HttpEndpoint": "enabled", "HttpTokens": "required"},
            "NetworkInterfaces": [
                {
                    "SubnetId": session.subnet_id,
                    "AssociatePublicIpAddress": True,
                    "DeviceIndex": 0,
                }
            ],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": "Name", "Value": name},
                        {"Key": cluster_tag_key(session.cluster_id), "Value": "owned"},
                        {"Key": ROLE_TAG_KEY, "Value": spec.role.value},
                    ],
                },
                {"ResourceType": "volume", "Tags": [{"Key": "Name", "Value": name}]},
            ],
            "BlockDeviceMappings": [
                {
                    "DeviceName": root_device_name,
                    "Ebs": {"VolumeSize": ROOT_VOLUME_SIZE_GB, "VolumeType": ROOT_VOLUME_TYPE},
                }
            ],
        }

        if spec.user_data:
            control_plane_ip = None if spec.is_control_plane else session.control_plane_ip
            payload = UserDataComposer.finalize(spec.user_data, control_plane_ip)
            request["UserData"] = base64.b64encode(payload.encode()).decode("ascii")

        if instance_profile_arn:
            request["IamInstanceProfile"] = {"Arn": instance_profile_arn}

        return request

    def _wait_for_running(self, instance: dict[str, Any]) -> dict[str, Any]:
        # addresses are only guaranteed once the instance is running
        retrying = Retrying(
            retry=retry_if_result(_not_running) | retry_if_exception_type(AWSError),
            stop=stop_after_attempt(self.wait_attempts),
            wait=wait_fixed(self.wait_interval),
            retry_error_callback=_last_result,
        )
        described = retrying(self.aws_client.describe_instance, instance["InstanceId"])
        if _not_running(described):
            logger.warning("instance_not_running_yet", instance_id=instance["InstanceId"])
        return described or instance

    def launch(self, spec: ImageSpec, session: ClusterSession) -> InstanceRecord:
        """Create an instance and return its record.

        Args:
            spec: What to launch
            session: Session the instance belongs to

        Returns:
            Record with the instance id and whatever addresses are known

        Raises:
            InstanceLaunchError: If the image, the instance profile, or the
                create call fails, or a worker is launched before the control
                plane IP is known
        """
        if not spec.is_control_plane and session.control_plane_ip is None:
            raise InstanceLaunchError("worker launched before the control plane IP is known")

        try:
            image = self.aws_client.describe_image(spec.image_id)
        except AWSError as e:
            raise InstanceLaunchError(f"describing images: {e}") from e

        arn = None
        if spec.instance_profile:
            try:
                arn = self.roles.instance_profile_arn(spec.instance_profile)
            except ProvisioningError as e:
                raise InstanceLaunchError(f"getting instance profile arn: {e}") from e

        request = self.build_request(spec, session, image["RootDeviceName"], arn)
        try:
            instance = self.aws_client.run_instance(request)
        except AWSError as e:
            raise InstanceLaunchError(f"creating {spec.role.value} instance: {e}") from e

        logger.info(
            "instance_launched",
            instance_id=instance["InstanceId"],
            role=spec.role.value,
            instance_type=spec.instance_type,
            image_id=spec.image_id,
        )

        record = InstanceRecord(instance_id=instance["InstanceId"], role=spec.role)
        record.update_from_description(self._wait_for_running(instance))
        return record
