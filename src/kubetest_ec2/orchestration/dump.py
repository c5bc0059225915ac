"""Best-effort diagnostic log collection from cluster instances."""

from pathlib import Path

from kubetest_ec2.core.exceptions import RemoteCommandError
from kubetest_ec2.core.models import InstanceRecord
from kubetest_ec2.interfaces.remote import RemoteRunner
from kubetest_ec2.readiness.gates import KUBECTL
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)

# (file prefix, command), collected from every instance
REMOTE_LOGS = (
    ("containerd-installation", "journalctl -u containerd-installation --no-pager"),
    ("containerd", "journalctl -u containerd --no-pager"),
    ("cloud-init", "cat /var/log/cloud-init.log"),
    ("cloud-init-output", "cat /var/log/cloud-init-output.log"),
    ("kubelet", "journalctl -u kubelet --no-pager"),
    ("journal", "journalctl --no-pager"),
)
CLUSTER_INFO_COMMAND = f"{KUBECTL} cluster-info dump --all-namespaces"
CNI_SUPPORT_COMMAND = "/opt/cni/bin/aws-cni-support.sh"
POD_LOG_PERMISSIONS_COMMAND = "chmod -R a+rx /var/log/pods/ && chmod -R a+rx /var/log/containers/"


class LogDumper:
    """Copy logs from every instance into a local directory.

    Nothing here raises: each failure is logged and the next item is tried,
    since dumps run while a cluster is failing or about to be destroyed.
    """

    def __init__(self, runner: RemoteRunner, logs_dir: str):
        self.runner = runner
        self.logs_dir = Path(logs_dir)

    async def dump(self, instances: list[InstanceRecord]) -> bool:
        """Collect logs from the given instances.

        Returns:
            False if the logs directory could not be created, True otherwise
        """
        logger.info("dumping_cluster_logs", logs_dir=str(self.logs_dir), instances=len(instances))
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("logs_dir_create_failed", logs_dir=str(self.logs_dir), error=str(e))
            return False

        for record in instances:
            await self._dump_cni_logs(record)
            for prefix, command in REMOTE_LOGS:
                await self._dump_command(record, prefix, command)
            if record.is_control_plane:
                await self._dump_command(record, "cluster-info", CLUSTER_INFO_COMMAND)
        return True

    async def _dump_command(self, record: InstanceRecord, prefix: str, command: str) -> None:
        try:
            output = await self.runner.run(record.instance_id, command)
        except RemoteCommandError as e:
            logger.error(
                "log_command_failed", instance_id=record.instance_id, command=command, error=str(e)
            )
            output = e.output

        path = self.logs_dir / record.instance_id / f"{prefix}.log"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(output)
        except OSError as e:
            logger.error("log_file_write_failed", path=str(path), error=str(e))

    async def _dump_cni_logs(self, record: InstanceRecord) -> None:
        instance_dir = self.logs_dir / record.instance_id
        try:
            (instance_dir / "aws-cni").mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("log_dir_create_failed", path=str(instance_dir), error=str(e))
            return

        steps = (
            (self.runner.run, (record.instance_id, CNI_SUPPORT_COMMAND)),
            (
                self.runner.copy_from,
                (record.instance_id, "/var/log/eks*.tar.gz", str(instance_dir / "aws-cni")),
            ),
            (self.runner.run, (record.instance_id, POD_LOG_PERMISSIONS_COMMAND)),
            (self.runner.copy_from, (record.instance_id, "/var/log/pods/", str(instance_dir))),
        )
        for call, args in steps:
            try:
                await call(*args)
            except RemoteCommandError as e:
                logger.error("cni_log_step_failed", instance_id=record.instance_id, error=str(e))
