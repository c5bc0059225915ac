"""Readiness gates an instance passes through before it is usable."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from kubetest_ec2.clients.aws_client import AWSClient
from kubetest_ec2.clients.ssh_client import SSHKeyInjector
from kubetest_ec2.core.exceptions import (
    AWSError,
    CloudInitFailedError,
    GateNotReadyError,
    RemoteCommandError,
)
from kubetest_ec2.core.models import InstanceRecord, InstanceState
from kubetest_ec2.interfaces.remote import RemoteRunner
from kubetest_ec2.utils.kubeconfig import REMOTE_ADMIN_KUBECONFIG
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)

KUBECTL = f"kubectl --kubeconfig {REMOTE_ADMIN_KUBECONFIG}"

CONTAINER_RUNTIME_COMMAND = (
    "sh -c \"systemctl list-units --type=service --state=running | grep -e containerd -e crio\""
)
CONTAINER_RUNTIME_SERVICES = ("containerd.service", "crio.service")
CLOUD_INIT_COMMAND = "cloud-init status"
CLOUD_INIT_DONE = "status: done"
CLOUD_INIT_ERROR = "status: error"
API_SERVER_COMMAND = f"{KUBECTL} version"
NODES_COMMAND = f"{KUBECTL} get nodes -o name"


@dataclass
class GateContext:
    """Dependencies shared by all gates."""

    aws_client: AWSClient
    runner: RemoteRunner
    key_injector: SSHKeyInjector | None = None


class ReadinessGate(ABC):
    """One precondition an instance must meet.

    ``check`` returns the observed output when the gate passes, raises
    :class:`GateNotReadyError` when the poll loop should try again, and raises
    any other error to abort polling for the instance.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Gate name for logging."""

    @property
    @abstractmethod
    def state(self) -> InstanceState:
        """State the instance is in while waiting on this gate."""

    def applies_to(self, record: InstanceRecord, context: GateContext) -> bool:
        """Whether the gate is evaluated for an instance (default: always)."""
        return True

    @abstractmethod
    async def check(self, record: InstanceRecord, context: GateContext) -> str:
        """Evaluate the gate.

        Args:
            record: Instance being polled
            context: Shared dependencies

        Returns:
            Output observed while checking

        Raises:
            GateNotReadyError: If the gate has not passed yet
            ReadinessError: If the instance can never pass it
        """

    async def _run(self, record: InstanceRecord, context: GateContext, command: str) -> str:
        try:
            return await context.runner.run(record.instance_id, command)
        except RemoteCommandError as e:
            raise GateNotReadyError(record.instance_id, self.name, e.output) from e


class NetworkGate(ReadinessGate):
    """Instance is running with a public address; registers it with the runner."""

    name = "network"
    state = InstanceState.WAITING_NETWORK

    async def check(self, record: InstanceRecord, context: GateContext) -> str:
        try:
            instance = await asyncio.to_thread(
                context.aws_client.describe_instance, record.instance_id
            )
        except AWSError as e:
            raise GateNotReadyError(record.instance_id, self.name, str(e)) from e

        status = (instance or {}).get("State", {}).get("Name")
        if instance is None or status != "running":
            raise GateNotReadyError(record.instance_id, self.name, f"instance state {status}")

        record.update_from_description(instance)
        if not record.public_ip:
            raise GateNotReadyError(record.instance_id, self.name, "no public IP address yet")

        await self._disable_source_dest_check(record, context)
        context.runner.register_host(record.instance_id, record.public_ip)
        return record.public_ip

    async def _disable_source_dest_check(self, record: InstanceRecord, context: GateContext) -> None:
        for interface in record.instance.get("NetworkInterfaces", []):
            if not interface.get("SourceDestCheck"):
                continue
            eni = interface["NetworkInterfaceId"]
            try:
                await asyncio.to_thread(context.aws_client.disable_source_dest_check, eni)
                logger.info("source_dest_check_disabled", instance_id=record.instance_id, eni=eni)
            except AWSError as e:
                logger.warning(
                    "source_dest_check_disable_failed",
                    instance_id=record.instance_id,
                    eni=eni,
                    error=str(e),
                )


class SSHKeyGate(ReadinessGate):
    """Install a login key through EC2 Instance Connect, once per instance."""

    name = "ssh_key"
    state = InstanceState.WAITING_SSH_KEYED

    def applies_to(self, record: InstanceRecord, context: GateContext) -> bool:
        return context.key_injector is not None

    async def check(self, record: InstanceRecord, context: GateContext) -> str:
        if record.ssh_key_file:
            return record.ssh_key_file
        injector = context.key_injector
        if injector is None:
            raise GateNotReadyError(record.instance_id, self.name, "no key injector configured")
        try:
            await asyncio.to_thread(injector.inject, record)
        except (RemoteCommandError, AWSError) as e:
            # sshd may not accept connections yet
            raise GateNotReadyError(record.instance_id, self.name, str(e)) from e
        return record.ssh_key_file or ""


class ContainerRuntimeGate(ReadinessGate):
    """containerd or CRI-O is running."""

    name = "container_runtime"
    state = InstanceState.WAITING_CONTAINER_RUNTIME

    async def check(self, record: InstanceRecord, context: GateContext) -> str:
        output = await self._run(record, context, CONTAINER_RUNTIME_COMMAND)
        if not any(service in output for service in CONTAINER_RUNTIME_SERVICES):
            raise GateNotReadyError(record.instance_id, self.name, output)
        return output


class CloudInitGate(ReadinessGate):
    """cloud-init has finished every stage; an error status aborts polling."""

    name = "cloud_init"
    state = InstanceState.WAITING_CLOUD_INIT

    async def check(self, record: InstanceRecord, context: GateContext) -> str:
        try:
            output = await context.runner.run(record.instance_id, CLOUD_INIT_COMMAND)
        except RemoteCommandError as e:
            # cloud-init status exits non-zero on error and on recoverable errors
            output = e.output

        if CLOUD_INIT_ERROR in output:
            raise CloudInitFailedError(record.instance_id, "cloud-init reported an error", output)
        if CLOUD_INIT_DONE not in output:
            raise GateNotReadyError(record.instance_id, self.name, output)
        return output


class APIServerGate(ReadinessGate):
    """The API server answers on the control plane."""

    name = "api_server"
    state = InstanceState.WAITING_API_SERVER

    def applies_to(self, record: InstanceRecord, context: GateContext) -> bool:
        return record.is_control_plane

    async def check(self, record: InstanceRecord, context: GateContext) -> str:
        return await self._run(record, context, API_SERVER_COMMAND)


class NodeRegisteredGate(ReadinessGate):
    """kubeadm init has registered at least one node."""

    name = "node_registered"
    state = InstanceState.WAITING_NODE_REGISTERED

    def applies_to(self, record: InstanceRecord, context: GateContext) -> bool:
        return record.is_control_plane

    async def check(self, record: InstanceRecord, context: GateContext) -> str:
        output = await self._run(record, context, NODES_COMMAND)
        if "node/" not in output:
            raise GateNotReadyError(record.instance_id, self.name, output)
        return output


def default_gates() -> list[ReadinessGate]:
    """Gates in the order they are evaluated."""
    return [
        NetworkGate(),
        SSHKeyGate(),
        ContainerRuntimeGate(),
        CloudInitGate(),
        APIServerGate(),
        NodeRegisteredGate(),
    ]
