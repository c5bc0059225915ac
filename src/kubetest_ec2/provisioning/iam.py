"""IAM role and instance profile provisioning."""

import json

from kubetest_ec2.clients.aws_client import AWSClient
from kubetest_ec2.core.exceptions import AWSError, ProvisioningError
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)

IAM_PATH = "/kubetest2/"

ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "eks.amazonaws.com"},
            "Action": "sts:AssumeRole",
        },
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        },
    ],
}

MANAGED_POLICIES = (
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
    "arn:aws:iam::aws:policy/AmazonEKSClusterPolicy",
    "arn:aws:iam::aws:policy/AmazonEKSServicePolicy",
    "arn:aws:iam::aws:policy/AmazonEKSVPCResourceController",
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
    "arn:aws:iam::aws:policy/AmazonS3ReadOnlyAccess",
)


class RoleProvisioner:
    """Idempotently ensure the node role and its instance profile exist.

    Both lookups are scoped to a dedicated IAM path so that a second run with
    the same names finds what the first run created and does nothing.
    """

    def __init__(self, aws_client: AWSClient, path: str = IAM_PATH):
        """Initialize role provisioner.

        Args:
            aws_client: AWS client
            path: IAM path the role and profile live under
        """
        self.aws_client = aws_client
        self.path = path

    def ensure_role(self, role_name: str) -> bool:
        """Create the role and attach its policies unless it already exists.

        Args:
            role_name: Role name

        Returns:
            True if the role was created, False if it already existed

        Raises:
            ProvisioningError: If the role cannot be listed or created
        """
        try:
            for role in self.aws_client.list_roles(self.path):
                if role["RoleName"] == role_name:
                    logger.info("role_exists", role_name=role_name, arn=role.get("Arn"))
                    return False

            logger.info("creating_role", role_name=role_name)
            created = self.aws_client.create_role(
                role_name, self.path, json.dumps(ASSUME_ROLE_POLICY)
            )
            logger.info("role_created", role_name=role_name, arn=created.get("Arn"))

            for policy_arn in MANAGED_POLICIES:
                self.aws_client.attach_role_policy(role_name, policy_arn)
        except AWSError as e:
            raise ProvisioningError(f"ensuring role {role_name}: {e}") from e
        return True

    def ensure_instance_profile(self, profile_name: str, role_name: str) -> bool:
        """Create the instance profile and attach the role unless it already exists.

        Args:
            profile_name: Instance profile name
            role_name: Role to attach

        Returns:
            True if the profile was created, False if it already existed

        Raises:
            ProvisioningError: If the profile cannot be listed or created
        """
        try:
            for profile in self.aws_client.list_instance_profiles(self.path):
                if profile["InstanceProfileName"] == profile_name:
                    logger.info(
                        "instance_profile_exists", profile_name=profile_name, arn=profile.get("Arn")
                    )
                    return False

            created = self.aws_client.create_instance_profile(profile_name, self.path)
            logger.info("instance_profile_created", profile_name=profile_name, arn=created.get("Arn"))

            if self.aws_client.list_instance_profiles_for_role(role_name):
                logger.info("role_already_in_instance_profile", role_name=role_name)
                return True

            self.aws_client.add_role_to_instance_profile(profile_name, role_name)
            logger.info("role_added_to_instance_profile", role_name=role_name, profile_name=profile_name)
        except AWSError as e:
            raise ProvisioningError(f"ensuring instance profile {profile_name}: {e}") from e
        return True

    def ensure(self, role_name: str, profile_name: str) -> None:
        """Ensure both the role and the instance profile exist.

        Args:
            role_name: Role name
            profile_name: Instance profile name

        Raises:
            ProvisioningError: If either cannot be ensured
        """
        self.ensure_role(role_name)
        self.ensure_instance_profile(profile_name, role_name)

    def instance_profile_arn(self, profile_name: str) -> str:
        """Resolve an instance profile name to its ARN.

        Args:
            profile_name: Instance profile name

        Returns:
            Instance profile ARN

        Raises:
            ProvisioningError: If no profile with that name exists
        """
        try:
            profiles = self.aws_client.list_instance_profiles(self.path)
        except AWSError as e:
            raise ProvisioningError(f"listing instance profiles: {e}") from e

        for profile in profiles:
            if profile["InstanceProfileName"] == profile_name:
                return str(profile["Arn"])
        raise ProvisioningError(f"unable to find ARN for instance profile {profile_name}")
