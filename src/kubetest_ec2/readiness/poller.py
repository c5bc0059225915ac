"""Per-instance readiness state machine."""

import asyncio
import functools

from kubetest_ec2.core.config import OutputConfig, PollingConfig
from kubetest_ec2.core.exceptions import (
    AWSError,
    GateNotReadyError,
    ReadinessError,
    ReadinessTimeoutError,
    RemoteCommandError,
)
from kubetest_ec2.core.models import ClusterSession, InstanceRecord, InstanceState
from kubetest_ec2.readiness.gates import KUBECTL, GateContext, ReadinessGate, default_gates
from kubetest_ec2.utils.kubeconfig import (
    REMOTE_ADMIN_KUBECONFIG,
    mirror_to_default,
    rewrite_server,
    write_private_kubeconfig,
)
from kubetest_ec2.utils.logging import get_logger
from kubetest_ec2.utils.retry import poll_until

logger = get_logger(__name__)

NODES_READY_COMMAND = f"{KUBECTL} wait --for=condition=ready nodes --timeout=5m --all"
UNTAINT_COMMAND = f"{KUBECTL} taint nodes --all node-role.kubernetes.io/control-plane:NoSchedule-"


class ReadinessPoller:
    """Drive one instance through the readiness gates.

    Every iteration evaluates the gates in order and stops at the first one
    that is not ready; the next iteration starts again from the first gate.
    Iterations are bounded by ``PollingConfig.attempts`` with a fixed sleep
    between them.
    """

    def __init__(
        self,
        context: GateContext,
        polling: PollingConfig | None = None,
        output: OutputConfig | None = None,
        gates: list[ReadinessGate] | None = None,
    ):
        """Initialize readiness poller.

        Args:
            context: Dependencies handed to every gate
            polling: Retry budgets
            output: Where the kubeconfig is written
            gates: Gates to evaluate, in order (defaults to :func:`default_gates`)
        """
        self.context = context
        self.polling = polling or PollingConfig()
        self.output = output or OutputConfig()
        self.gates = gates if gates is not None else default_gates()

    async def wait_running(self, record: InstanceRecord) -> None:
        """Block until EC2 reports the instance as running.

        Raises:
            ReadinessTimeoutError: If it is not running within the budget
        """
        record.state = InstanceState.WAITING_RUNNING
        try:
            await asyncio.to_thread(
                self.context.aws_client.wait_until_running,
                record.instance_id,
                self.polling.running_timeout_seconds,
                self.polling.running_poll_seconds,
            )
        except AWSError as e:
            record.state = InstanceState.FAILED
            raise ReadinessTimeoutError(record.instance_id, "instance never reached running", str(e)) from e

    async def _iteration(self, record: InstanceRecord) -> str:
        output = ""
        for gate in self.gates:
            if not gate.applies_to(record, self.context):
                continue
            record.state = gate.state
            output = await gate.check(record, self.context)
            logger.debug("gate_passed", instance_id=record.instance_id, gate=gate.name)
        return output

    async def poll(self, record: InstanceRecord, session: ClusterSession) -> InstanceRecord:
        """Wait until the instance passes every gate.

        For the control plane this also waits for nodes to be Ready, removes
        the control-plane taint and downloads the kubeconfig into the session.

        Args:
            record: Instance to poll
            session: Session the instance belongs to

        Returns:
            The same record, in state READY

        Raises:
            ReadinessTimeoutError: If a gate never passes within the budget
            CloudInitFailedError: If the boot script failed
            ReadinessError: If control-plane finalization fails
        """
        await self.wait_running(record)
        try:
            await poll_until(
                functools.partial(self._iteration, record),
                attempts=self.polling.attempts,
                interval=self.polling.interval_seconds,
                description=f"instance {record.instance_id}",
            )
            if record.is_control_plane:
                await self.finalize_control_plane(record, session)
        except GateNotReadyError as e:
            record.state = InstanceState.FAILED
            raise ReadinessTimeoutError(
                record.instance_id,
                f"not ready after {self.polling.attempts} attempts, waiting on {e.gate}",
                e.output,
            ) from e
        except Exception:
            record.state = InstanceState.FAILED
            raise

        record.state = InstanceState.READY
        logger.info("instance_ready", instance_id=record.instance_id, role=record.role.value)
        return record

    async def _must_run(self, record: InstanceRecord, command: str, what: str) -> str:
        try:
            return await self.context.runner.run(record.instance_id, command)
        except RemoteCommandError as e:
            raise ReadinessError(record.instance_id, what, e.output) from e

    async def finalize_control_plane(self, record: InstanceRecord, session: ClusterSession) -> str:
        """Wait for Ready nodes, untaint them and fetch the kubeconfig.

        Args:
            record: Control-plane instance
            session: Session receiving the kubeconfig path

        Returns:
            Path of the local kubeconfig

        Raises:
            ReadinessError: If any step fails
        """
        record.state = InstanceState.WAITING_NODE_READY
        await self._must_run(record, NODES_READY_COMMAND, "nodes are not ready")
        await self._must_run(record, UNTAINT_COMMAND, "unable to remove control-plane taint")

        if session.kubeconfig_path:
            return session.kubeconfig_path

        content = await self._must_run(
            record, f"cat {REMOTE_ADMIN_KUBECONFIG}", "error downloading kubeconfig"
        )
        if not record.public_ip:
            raise ReadinessError(record.instance_id, "control plane has no public IP")

        path = write_private_kubeconfig(
            rewrite_server(content, record.public_ip), self.output.kubeconfig_path
        )
        if self.output.mirror_kubeconfig:
            try:
                mirror_to_default(path)
            except OSError as e:
                logger.warning("kubeconfig_mirror_failed", path=path, error=str(e))

        session.kubeconfig_path = path
        logger.info("kubeconfig_ready", path=path, server=record.public_ip)
        return path
