"""Tests for IAM role and instance profile provisioning."""

import json
from unittest.mock import MagicMock, Mock, patch

import pytest
from botocore.exceptions import ClientError

from kubetest_ec2.clients.aws_client import AWSClient
from kubetest_ec2.core.exceptions import AWSError, ProvisioningError
from kubetest_ec2.provisioning.iam import IAM_PATH, MANAGED_POLICIES, RoleProvisioner

ROLE = "kubetest2-ec2-role"
PROFILE = "kubetest2-ec2-instance-profile"


class FakeIAM:
    """In-memory IAM backing a mocked AWS client."""

    def __init__(self) -> None:
        self.roles: list[dict] = []
        self.profiles: list[dict] = []
        self.attached: list[tuple[str, str]] = []
        self.profile_roles: dict[str, list[str]] = {}

    def client(self) -> MagicMock:
        client = MagicMock()
        client.list_roles.side_effect = lambda path: list(self.roles)
        client.create_role.side_effect = self.create_role
        client.attach_role_policy.side_effect = lambda role, arn: self.attached.append((role, arn))
        client.list_instance_profiles.side_effect = lambda path: list(self.profiles)
        client.create_instance_profile.side_effect = self.create_instance_profile
        client.list_instance_profiles_for_role.side_effect = lambda role: [
            {"InstanceProfileName": name}
            for name, roles in self.profile_roles.items()
            if role in roles
        ]
        client.add_role_to_instance_profile.side_effect = (
            lambda profile, role: self.profile_roles.setdefault(profile, []).append(role)
        )
        return client

    def create_role(self, name: str, path: str, policy: str) -> dict:
        role = {"RoleName": name, "Path": path, "Arn": f"arn:aws:iam::123:role{path}{name}"}
        self.roles.append(role)
        return role

    def create_instance_profile(self, name: str, path: str) -> dict:
        profile = {
            "InstanceProfileName": name,
            "Arn": f"arn:aws:iam::123:instance-profile{path}{name}",
        }
        self.profiles.append(profile)
        return profile


@pytest.fixture
def iam() -> FakeIAM:
    """Empty IAM account."""
    return FakeIAM()


class TestRoleProvisioner:
    """Tests for RoleProvisioner."""

    def test_ensure_creates_everything(self, iam: FakeIAM) -> None:
        """Test a fresh account gets the role, policies and profile."""
        client = iam.client()
        provisioner = RoleProvisioner(client)

        provisioner.ensure(ROLE, PROFILE)

        assert [r["RoleName"] for r in iam.roles] == [ROLE]
        assert [arn for _, arn in iam.attached] == list(MANAGED_POLICIES)
        assert [p["InstanceProfileName"] for p in iam.profiles] == [PROFILE]
        assert iam.profile_roles == {PROFILE: [ROLE]}

        _, path, policy = client.create_role.call_args.args
        assert path == IAM_PATH
        principals = {s["Principal"]["Service"] for s in json.loads(policy)["Statement"]}
        assert principals == {"ec2.amazonaws.com", "eks.amazonaws.com"}

    def test_ensure_is_idempotent(self, iam: FakeIAM) -> None:
        """Test a second run creates nothing."""
        client = iam.client()
        provisioner = RoleProvisioner(client)
        provisioner.ensure(ROLE, PROFILE)
        client.reset_mock()

        assert provisioner.ensure_role(ROLE) is False
        assert provisioner.ensure_instance_profile(PROFILE, ROLE) is False

        client.create_role.assert_not_called()
        client.attach_role_policy.assert_not_called()
        client.create_instance_profile.assert_not_called()
        client.add_role_to_instance_profile.assert_not_called()

    def test_role_already_in_other_profile(self, iam: FakeIAM) -> None:
        """Test the role is not added again when already attached somewhere."""
        iam.profile_roles["other-profile"] = [ROLE]
        client = iam.client()

        assert RoleProvisioner(client).ensure_instance_profile(PROFILE, ROLE) is True
        client.add_role_to_instance_profile.assert_not_called()

    def test_ensure_role_error(self, iam: FakeIAM) -> None:
        """Test IAM failures raise ProvisioningError."""
        client = iam.client()
        client.create_role.side_effect = AWSError("creating role: AccessDenied")

        with pytest.raises(ProvisioningError, match=ROLE):
            RoleProvisioner(client).ensure_role(ROLE)

    def test_boto_errors_reach_provisioner_translated(self) -> None:
        """Test raw botocore errors from IAM surface as ProvisioningError."""
        with patch("boto3.Session"):
            aws_client = AWSClient()
        paginator = MagicMock()
        paginator.paginate.return_value = [{"Roles": []}]
        aws_client.iam.get_paginator = Mock(return_value=paginator)
        aws_client.iam.create_role = Mock(
            side_effect=ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "CreateRole")
        )

        with pytest.raises(ProvisioningError, match="AccessDenied") as exc_info:
            RoleProvisioner(aws_client).ensure_role(ROLE)
        assert isinstance(exc_info.value.__cause__, AWSError)

    def test_instance_profile_arn(self, iam: FakeIAM) -> None:
        """Test names resolve to ARNs."""
        client = iam.client()
        RoleProvisioner(client).ensure(ROLE, PROFILE)

        arn = RoleProvisioner(client).instance_profile_arn(PROFILE)
        assert arn == f"arn:aws:iam::123:instance-profile{IAM_PATH}{PROFILE}"

    def test_instance_profile_arn_missing(self, iam: FakeIAM) -> None:
        """Test unknown profiles raise ProvisioningError."""
        with pytest.raises(ProvisioningError, match="unable to find ARN"):
            RoleProvisioner(iam.client()).instance_profile_arn("missing")
