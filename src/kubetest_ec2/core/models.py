"""Core data models for kubetest-ec2."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from kubetest_ec2.core.exceptions import KubetestEC2Error


class InstanceRole(str, Enum):
    """Role an instance plays in the cluster."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class InstanceState(str, Enum):
    """Readiness state of a single instance."""

    LAUNCHED = "launched"
    WAITING_RUNNING = "waiting-running"
    WAITING_NETWORK = "waiting-network"
    WAITING_SSH_KEYED = "waiting-ssh-keyed"
    WAITING_CONTAINER_RUNTIME = "waiting-container-runtime"
    WAITING_CLOUD_INIT = "waiting-cloud-init"
    WAITING_API_SERVER = "waiting-api-server"
    WAITING_NODE_REGISTERED = "waiting-node-registered"
    WAITING_NODE_READY = "waiting-node-ready"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self in (InstanceState.READY, InstanceState.FAILED)


class SessionState(str, Enum):
    """State of the whole cluster session."""

    IDLE = "idle"
    VALIDATING = "validating"
    LAUNCHING = "launching"
    POLLING = "polling"
    POST_INSTALL = "post-install"
    UP = "up"
    TEARING_DOWN = "tearing-down"
    DOWN = "down"


@dataclass(frozen=True)
class ImageSpec:
    """Request to launch one instance."""

    image_id: str
    instance_type: str
    user_data: str
    role: InstanceRole
    instance_profile: str | None = None
    description: str = ""

    @property
    def is_control_plane(self) -> bool:
        """Whether this spec launches the control plane."""
        return self.role is InstanceRole.CONTROL_PLANE


@dataclass
class InstanceRecord:
    """One running compute instance tracked by the session."""

    instance_id: str
    role: InstanceRole
    instance: dict[str, Any] = field(default_factory=dict)
    public_ip: str | None = None
    private_ip: str | None = None
    availability_zone: str | None = None
    ssh_public_key: str | None = None
    ssh_key_file: str | None = None
    state: InstanceState = InstanceState.LAUNCHED

    @property
    def is_control_plane(self) -> bool:
        """Whether this instance is the control plane."""
        return self.role is InstanceRole.CONTROL_PLANE

    def update_from_description(self, instance: dict[str, Any]) -> None:
        """Refresh addresses and placement from a DescribeInstances entry.

        Args:
            instance: Instance dictionary as returned by EC2
        """
        self.instance = instance
        self.public_ip = instance.get("PublicIpAddress") or self.public_ip
        self.private_ip = instance.get("PrivateIpAddress") or self.private_ip
        placement = instance.get("Placement") or {}
        self.availability_zone = placement.get("AvailabilityZone") or self.availability_zone


@dataclass
class ClusterSession:
    """One end-to-end run: the identity and secrets shared by every instance."""

    cluster_id: str
    token: str
    certificate_key: str
    region: str
    subnet_id: str | None = None
    vpc_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    instances: list[InstanceRecord] = field(default_factory=list)
    kubeconfig_path: str | None = None
    state: SessionState = SessionState.IDLE
    _control_plane_ip: str | None = field(default=None, repr=False)

    @property
    def control_plane_ip(self) -> str | None:
        """Private IP of the control-plane instance, once known."""
        return self._control_plane_ip

    def set_control_plane_ip(self, ip: str) -> None:
        """Record the control-plane private IP.

        Args:
            ip: Private IP address

        Raises:
            KubetestEC2Error: If a different address was already recorded
        """
        if self._control_plane_ip is not None and self._control_plane_ip != ip:
            raise KubetestEC2Error(
                f"control plane IP already set to {self._control_plane_ip}, refusing {ip}"
            )
        self._control_plane_ip = ip

    @property
    def control_plane(self) -> InstanceRecord | None:
        """The tracked control-plane instance, if launched."""
        return next((i for i in self.instances if i.is_control_plane), None)

    @property
    def workers(self) -> list[InstanceRecord]:
        """Tracked worker instances."""
        return [i for i in self.instances if not i.is_control_plane]

    def track(self, record: InstanceRecord) -> None:
        """Add a launched instance to the session.

        Args:
            record: Instance record to track

        Raises:
            KubetestEC2Error: If a second control plane is added
        """
        if record.is_control_plane and self.control_plane is not None:
            raise KubetestEC2Error(
                f"session {self.cluster_id} already has a control plane "
                f"({self.control_plane.instance_id})"
            )
        self.instances.append(record)
