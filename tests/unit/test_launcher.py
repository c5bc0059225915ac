"""Tests for instance creation."""

import base64
from unittest.mock import MagicMock, patch

import pytest

from kubetest_ec2.core.exceptions import AWSError, InstanceLaunchError, ProvisioningError
from kubetest_ec2.core.models import ClusterSession, ImageSpec, InstanceRole
from kubetest_ec2.provisioning.launcher import (
    ROLE_TAG_KEY,
    ROOT_VOLUME_SIZE_GB,
    InstanceLauncher,
    cluster_tag_key,
    pick_subnet,
)
from kubetest_ec2.provisioning.userdata import CONTROL_PLANE_IP_TOKEN
from tests.fakes import running_instance

USER_DATA = f"#cloud-config\nip: {CONTROL_PLANE_IP_TOKEN}\n"


def make_spec(role: InstanceRole, profile: str | None = "kt2-profile") -> ImageSpec:
    """Spec for one instance."""
    return ImageSpec(
        image_id="ami-12345678",
        instance_type="t3a.medium",
        user_data=USER_DATA,
        role=role,
        instance_profile=profile,
    )


@pytest.fixture
def aws_client() -> MagicMock:
    """AWS client that creates running instances."""
    client = MagicMock()
    client.describe_image.return_value = {"ImageId": "ami-12345678", "RootDeviceName": "/dev/sda1"}
    client.run_instance.return_value = {"InstanceId": "i-new", "State": {"Name": "pending"}}
    client.describe_instance.return_value = running_instance("i-new", private_ip="10.0.1.10")
    return client


@pytest.fixture
def roles() -> MagicMock:
    """Role provisioner resolving instance profile ARNs."""
    provisioner = MagicMock()
    provisioner.instance_profile_arn.return_value = "arn:aws:iam::123:instance-profile/kt2-profile"
    return provisioner


@pytest.fixture
def launcher(aws_client: MagicMock, roles: MagicMock) -> InstanceLauncher:
    """Launcher that does not sleep between describe calls."""
    return InstanceLauncher(aws_client, roles, wait_attempts=3, wait_interval=0)


def decoded_user_data(request: dict) -> str:
    """User data as sent in a RunInstances request."""
    return base64.b64decode(request["UserData"]).decode()


class TestBuildRequest:
    """Tests for RunInstances request construction."""

    def test_request_shape(self, launcher: InstanceLauncher, cluster_session: ClusterSession) -> None:
        """Test one instance with IMDSv2, public IP, tags and root volume."""
        request = launcher.build_request(
            make_spec(InstanceRole.CONTROL_PLANE),
            cluster_session,
            "/dev/sda1",
            "arn:aws:iam::123:instance-profile/kt2-profile",
        )

        assert request["MinCount"] == 1
        assert request["MaxCount"] == 1
        assert request["ImageId"] == "ami-12345678"
        assert request["MetadataOptions"] == {"HttpEndpoint": "enabled", "HttpTokens": "required"}
        assert request["NetworkInterfaces"] == [
            {"SubnetId": "subnet-0123", "AssociatePublicIpAddress": True, "DeviceIndex": 0}
        ]
        assert request["BlockDeviceMappings"] == [
            {
                "DeviceName": "/dev/sda1",
                "Ebs": {"VolumeSize": ROOT_VOLUME_SIZE_GB, "VolumeType": "gp3"},
            }
        ]
        assert request["IamInstanceProfile"] == {"Arn": "arn:aws:iam::123:instance-profile/kt2-profile"}

        tags = {t["Key"]: t["Value"] for t in request["TagSpecifications"][0]["Tags"]}
        assert tags[cluster_tag_key("kt2-abc12345")] == "owned"
        assert tags[ROLE_TAG_KEY] == "control-plane"
        assert tags["Name"].startswith("kt2-abc12345")
        assert request["TagSpecifications"][1]["ResourceType"] == "volume"

    def test_control_plane_user_data(
        self, launcher: InstanceLauncher, cluster_session: ClusterSession
    ) -> None:
        """Test the control plane gets an empty control-plane IP."""
        request = launcher.build_request(make_spec(InstanceRole.CONTROL_PLANE), cluster_session, "/dev/sda1")
        assert decoded_user_data(request) == "#cloud-config\nip: \n"
        assert "IamInstanceProfile" not in request

    def test_worker_user_data(self, launcher: InstanceLauncher, cluster_session: ClusterSession) -> None:
        """Test workers get the control-plane private IP."""
        cluster_session.set_control_plane_ip("10.0.1.10")
        request = launcher.build_request(make_spec(InstanceRole.WORKER), cluster_session, "/dev/sda1")
        assert decoded_user_data(request) == "#cloud-config\nip: 10.0.1.10\n"

    def test_unique_names(self, launcher: InstanceLauncher, cluster_session: ClusterSession) -> None:
        """Test each instance gets its own name."""
        spec = make_spec(InstanceRole.CONTROL_PLANE)
        first = launcher.build_request(spec, cluster_session, "/dev/sda1")
        second = launcher.build_request(spec, cluster_session, "/dev/sda1")
        assert first["TagSpecifications"][0]["Tags"][0] != second["TagSpecifications"][0]["Tags"][0]


class TestLaunch:
    """Tests for InstanceLauncher.launch."""

    def test_launch_control_plane(
        self, launcher: InstanceLauncher, aws_client: MagicMock, cluster_session: ClusterSession
    ) -> None:
        """Test the record carries the described addresses."""
        record = launcher.launch(make_spec(InstanceRole.CONTROL_PLANE), cluster_session)

        assert record.instance_id == "i-new"
        assert record.role is InstanceRole.CONTROL_PLANE
        assert record.private_ip == "10.0.1.10"
        assert record.public_ip == "203.0.113.5"
        aws_client.describe_image.assert_called_once_with("ami-12345678")

    def test_worker_before_control_plane(
        self, launcher: InstanceLauncher, aws_client: MagicMock, cluster_session: ClusterSession
    ) -> None:
        """Test a worker cannot launch before the control-plane IP is known."""
        with pytest.raises(InstanceLaunchError, match="before the control plane IP"):
            launcher.launch(make_spec(InstanceRole.WORKER), cluster_session)
        aws_client.run_instance.assert_not_called()

    def test_waits_until_running(
        self, launcher: InstanceLauncher, aws_client: MagicMock, cluster_session: ClusterSession
    ) -> None:
        """Test describe is retried until the instance runs."""
        aws_client.describe_instance.side_effect = [
            running_instance("i-new", state="pending", private_ip=""),
            running_instance("i-new", private_ip="10.0.1.11"),
        ]

        record = launcher.launch(make_spec(InstanceRole.CONTROL_PLANE), cluster_session)

        assert aws_client.describe_instance.call_count == 2
        assert record.private_ip == "10.0.1.11"

    def test_never_running_keeps_last_description(
        self, launcher: InstanceLauncher, aws_client: MagicMock, cluster_session: ClusterSession
    ) -> None:
        """Test the last description is used once the wait budget is spent."""
        aws_client.describe_instance.return_value = running_instance(
            "i-new", state="pending", private_ip="10.0.1.12"
        )

        record = launcher.launch(make_spec(InstanceRole.CONTROL_PLANE), cluster_session)

        assert aws_client.describe_instance.call_count == 3
        assert record.private_ip == "10.0.1.12"

    def test_image_error(
        self, launcher: InstanceLauncher, aws_client: MagicMock, cluster_session: ClusterSession
    ) -> None:
        """Test image lookup failures are launch errors."""
        aws_client.describe_image.side_effect = AWSError("image ami-12345678 not found")
        with pytest.raises(InstanceLaunchError, match="describing images"):
            launcher.launch(make_spec(InstanceRole.CONTROL_PLANE), cluster_session)

    def test_profile_error(
        self, launcher: InstanceLauncher, roles: MagicMock, cluster_session: ClusterSession
    ) -> None:
        """Test missing instance profiles are launch errors."""
        roles.instance_profile_arn.side_effect = ProvisioningError("unable to find ARN")
        with pytest.raises(InstanceLaunchError, match="instance profile"):
            launcher.launch(make_spec(InstanceRole.CONTROL_PLANE), cluster_session)

    def test_create_error(
        self, launcher: InstanceLauncher, aws_client: MagicMock, cluster_session: ClusterSession
    ) -> None:
        """Test RunInstances failures are launch errors naming the role."""
        aws_client.run_instance.side_effect = AWSError("InsufficientInstanceCapacity")
        with pytest.raises(InstanceLaunchError, match="creating control-plane instance"):
            launcher.launch(make_spec(InstanceRole.CONTROL_PLANE), cluster_session)


class TestPickSubnet:
    """Tests for subnet selection."""

    def test_skips_unsupported_zone(self) -> None:
        """Test subnets in skipped zones are never chosen."""
        client = MagicMock()
        client.default_vpc_id.return_value = "vpc-1"
        client.describe_subnets.return_value = [
            {"SubnetId": "subnet-e", "AvailabilityZone": "us-east-1e"},
            {"SubnetId": "subnet-a", "AvailabilityZone": "us-east-1a"},
        ]

        for _ in range(20):
            assert pick_subnet(client) == ("subnet-a", "vpc-1")

    def test_random_choice(self) -> None:
        """Test the choice is delegated to random.choice."""
        client = MagicMock()
        client.default_vpc_id.return_value = "vpc-1"
        client.describe_subnets.return_value = [
            {"SubnetId": "subnet-a", "AvailabilityZone": "us-east-1a"},
            {"SubnetId": "subnet-b", "AvailabilityZone": "us-east-1b"},
        ]

        with patch("kubetest_ec2.provisioning.launcher.random.choice", return_value="subnet-b") as choice:
            assert pick_subnet(client) == ("subnet-b", "vpc-1")
        choice.assert_called_once_with(["subnet-a", "subnet-b"])

    def test_no_candidates(self) -> None:
        """Test a VPC with only skipped subnets is an error."""
        client = MagicMock()
        client.default_vpc_id.return_value = "vpc-1"
        client.describe_subnets.return_value = [{"SubnetId": "subnet-e", "AvailabilityZone": "us-east-1e"}]

        with pytest.raises(InstanceLaunchError, match="no subnets"):
            pick_subnet(client)

    def test_no_default_vpc(self) -> None:
        """Test a missing default VPC is an error."""
        client = MagicMock()
        client.default_vpc_id.side_effect = AWSError("no default VPC found in us-east-1")

        with pytest.raises(InstanceLaunchError, match="selecting subnet"):
            pick_subnet(client)
