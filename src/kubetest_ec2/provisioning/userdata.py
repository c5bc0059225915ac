"""Boot-time user data rendering.

The payload handed to each instance is a base template (cloud-config) whose
``{{TOKEN}}`` placeholders are filled from one ordered table. Sub-documents
(kubeadm configuration, helper scripts, systemd units) are rendered with the
same values, gzip compressed and base64 encoded, then spliced into the base
template under their own token. Placeholders that only the instance can know
(provider id, node IP, ...) live inside those encoded sub-documents and are
filled in on the host by ``run-kubeadm.sh``.

``{{KUBEADM_CONTROL_PLANE_IP}}`` is the one token left in a composed payload;
it is filled by :meth:`UserDataComposer.finalize` once the control plane has
a private address.
"""

import base64
import gzip
import re
from collections.abc import Callable
from dataclasses import dataclass
from importlib import resources
from pathlib import Path

from kubetest_ec2.core.config import DeployerConfig, UserDataConfig
from kubetest_ec2.core.exceptions import (
    ConfigurationError,
    UnresolvedPlaceholderError,
    UserDataTooLargeError,
)
from kubetest_ec2.core.models import ClusterSession, InstanceRole
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)

# EC2 rejects user data above 16 KiB
MAX_USER_DATA_BYTES = 16384

CONTROL_PLANE_IP_TOKEN = "{{KUBEADM_CONTROL_PLANE_IP}}"
TOKEN_PATTERN = re.compile(r"\{\{[A-Z0-9_]+\}\}")

BASE_TEMPLATES = {
    "ubuntu2404": "ubuntu.yaml",
    "ubuntu2204": "ubuntu.yaml",
    "al2023": "al2023.yaml",
}

Producer = Callable[[], str]


@dataclass(frozen=True)
class UserDataInputs:
    """Values substituted into every template."""

    staging_location: str
    staging_version: str
    token: str
    certificate_key: str
    cluster_id: str
    feature_gates: str = ""
    runtime_config: str = ""
    external_cloud_provider: bool = False
    external_cloud_provider_image: str = ""
    external_load_balancer: bool = False
    nvidia_device_plugin: bool = False

    @classmethod
    def from_config(cls, config: DeployerConfig, session: ClusterSession) -> "UserDataInputs":
        """Collect the inputs for one session.

        Args:
            config: Deployer configuration
            session: Cluster session holding the generated secrets

        Returns:
            Substitution inputs
        """
        features = config.features
        return cls(
            staging_location=config.staging.location,
            staging_version=config.staging.version,
            token=session.token,
            certificate_key=session.certificate_key,
            cluster_id=session.cluster_id,
            feature_gates=features.feature_gates,
            runtime_config=features.runtime_config,
            external_cloud_provider=features.external_cloud_provider,
            external_cloud_provider_image=features.external_cloud_provider_image,
            external_load_balancer=features.external_load_balancer,
            nvidia_device_plugin=features.nvidia_device_plugin,
        )


def gzip_base64(content: str) -> str:
    """gzip then base64 encode text.

    The gzip header timestamp is pinned so equal input gives equal output.
    """
    compressed = gzip.compress(content.encode(), mtime=0)
    return base64.b64encode(compressed).decode("ascii")


def find_placeholders(payload: str) -> list[str]:
    """Distinct ``{{TOKEN}}`` placeholders present in a payload, sorted."""
    return sorted(set(TOKEN_PATTERN.findall(payload)))


def _flag(value: bool) -> str:
    return "true" if value else "false"


class UserDataComposer:
    """Render per-role user data from the embedded templates or overrides."""

    def __init__(self, config: UserDataConfig | None = None, os_name: str = "ubuntu2404"):
        """Initialize user data composer.

        Args:
            config: Template override files
            os_name: OS whose base template is used when no override is set
        """
        self.config = config or UserDataConfig()
        self.os_name = os_name

    def load_template(self, name: str, override: str | None = None) -> str:
        """Read a template, preferring an explicitly configured file.

        Args:
            name: Embedded template name
            override: Path to a file replacing the embedded template

        Returns:
            Template text

        Raises:
            ConfigurationError: If the template cannot be read
        """
        if override:
            try:
                return Path(override).expanduser().read_text()
            except OSError as e:
                raise ConfigurationError(f"reading template {override!r}: {e}") from e
        try:
            return (resources.files("kubetest_ec2") / "templates" / name).read_text()
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"reading embedded template {name!r}: {e}") from e

    def base_template(self) -> str:
        """The parent template for the configured OS or override file."""
        if self.config.user_data_file:
            return self.load_template("", self.config.user_data_file)
        name = BASE_TEMPLATES.get(self.os_name)
        if name is None:
            raise ConfigurationError(f"no user data template for OS {self.os_name!r}")
        return self.load_template(name)

    def _configure_script_override(self) -> str | None:
        # a configure.sh next to a custom user data file replaces the embedded one
        if not self.config.user_data_file:
            return None
        candidate = Path(self.config.user_data_file).expanduser().parent / "configure.sh"
        return str(candidate) if candidate.exists() else None

    @staticmethod
    def value_table(inputs: UserDataInputs) -> list[tuple[str, str]]:
        """Plain value substitutions, in application order."""
        return [
            ("{{STAGING_BUCKET}}", inputs.staging_location),
            ("{{STAGING_VERSION}}", inputs.staging_version),
            ("{{KUBEADM_TOKEN}}", inputs.token),
            ("{{KUBEADM_CERTIFICATE_KEY}}", inputs.certificate_key),
            ("{{KUBEADM_CLUSTER_ID}}", inputs.cluster_id),
            ("{{FEATURE_GATES}}", inputs.feature_gates),
            ("{{RUNTIME_CONFIG}}", inputs.runtime_config),
            ("{{EXTERNAL_CLOUD_PROVIDER}}", "external" if inputs.external_cloud_provider else ""),
            ("{{EXTERNAL_CLOUD_PROVIDER_IMAGE}}", inputs.external_cloud_provider_image),
            ("{{EXTERNAL_LOAD_BALANCER}}", _flag(inputs.external_load_balancer)),
            ("{{ENABLE_NVIDIA_DEVICE_PLUGIN}}", _flag(inputs.nvidia_device_plugin)),
        ]

    def _document(self, name: str, override: str | None, values: list[tuple[str, str]]) -> Producer:
        def produce() -> str:
            return gzip_base64(self._apply(self.load_template(name, override), values))

        return produce

    def substitution_table(self, inputs: UserDataInputs) -> list[tuple[str, Producer]]:
        """The full ordered ``(token, producer)`` table for the shared part of the payload.

        Role selection and the control-plane IP are not part of it.
        """
        values = self.value_table(inputs)
        table: list[tuple[str, Producer]] = [
            (token, (lambda value=value: value)) for token, value in values
        ]
        documents = [
            ("{{CONFIGURE_SH}}", "configure.sh", self._configure_script_override()),
            ("{{KUBEADM_INIT_YAML}}", "kubeadm-init.yaml", self.config.kubeadm_init_file),
            ("{{KUBEADM_JOIN_YAML}}", "kubeadm-join.yaml", self.config.kubeadm_join_file),
            ("{{RUN_KUBEADM_SH}}", "run-kubeadm.sh", None),
            ("{{RUN_POST_INSTALL_SH}}", "run-post-install.sh", None),
            ("{{CONTAINERD_INSTALL_SERVICE}}", "containerd-installation.service", None),
            ("{{CONTAINERD_SERVICE}}", "containerd.service", None),
            ("{{CONTAINERD_TARGET}}", "containerd.target", None),
            ("{{KUBELET_SERVICE}}", "kubelet.service", None),
            ("{{KUBEADM_CONF}}", "10-kubeadm.conf", None),
            ("{{CREDENTIAL_PROVIDER_YAML}}", "credential-provider.yaml", None),
        ]
        for token, name, override in documents:
            table.append((token, self._document(name, override, values)))
        return table

    @staticmethod
    def _apply(text: str, values: list[tuple[str, str]]) -> str:
        for token, value in values:
            text = text.replace(token, value)
        return text

    def compose(self, role: InstanceRole, inputs: UserDataInputs) -> str:
        """Render the payload for one role.

        Args:
            role: Control plane or worker
            inputs: Substitution values

        Returns:
            Payload with only the control-plane IP placeholder left

        Raises:
            UserDataTooLargeError: If the payload exceeds the size ceiling
            UnresolvedPlaceholderError: If an unknown placeholder remains
            ConfigurationError: If a template cannot be read
        """
        payload = self.base_template()
        for token, produce in self.substitution_table(inputs):
            if token in payload:
                payload = payload.replace(token, produce())
        payload = payload.replace(
            "{{KUBEADM_CONTROL_PLANE}}", _flag(role is InstanceRole.CONTROL_PLANE)
        )

        # the IP substituted later is never longer than its placeholder
        size = len(payload.encode())
        if size > MAX_USER_DATA_BYTES:
            raise UserDataTooLargeError(role.value, size, MAX_USER_DATA_BYTES)

        leftover = [t for t in find_placeholders(payload) if t != CONTROL_PLANE_IP_TOKEN]
        if leftover:
            raise UnresolvedPlaceholderError(leftover)

        logger.debug("user_data_composed", role=role.value, size=size)
        return payload

    def compose_all(self, inputs: UserDataInputs) -> dict[InstanceRole, str]:
        """Render the payload for every role."""
        return {role: self.compose(role, inputs) for role in InstanceRole}

    @staticmethod
    def finalize(payload: str, control_plane_ip: str | None) -> str:
        """Fill in the control-plane IP at launch time.

        Args:
            payload: Composed payload
            control_plane_ip: Private IP of the control plane; None when
                launching the control plane itself

        Returns:
            Payload ready to be sent to EC2

        Raises:
            UnresolvedPlaceholderError: If any placeholder remains
        """
        payload = payload.replace(CONTROL_PLANE_IP_TOKEN, control_plane_ip or "")
        leftover = find_placeholders(payload)
        if leftover:
            raise UnresolvedPlaceholderError(leftover)
        return payload
