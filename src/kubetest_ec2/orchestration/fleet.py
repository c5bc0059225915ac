"""Cluster lifecycle: up, down and is-up across the whole fleet."""

import asyncio
from collections.abc import Callable
from pathlib import Path

from kubetest_ec2.clients.aws_client import AWSClient
from kubetest_ec2.clients.kubernetes_client import KubernetesClient
from kubetest_ec2.clients.ssh_client import SSHKeyInjector, SSHRemoteRunner, local_ssh_key_exists
from kubetest_ec2.core.config import DeployerConfig
from kubetest_ec2.core.exceptions import (
    AWSError,
    CloudInitFailedError,
    GateNotReadyError,
    InstanceLaunchError,
    KubernetesError,
    KubetestEC2Error,
    ReadinessTimeoutError,
    RemoteCommandError,
    TeardownError,
)
from kubetest_ec2.core.models import (
    ClusterSession,
    ImageSpec,
    InstanceRecord,
    InstanceRole,
    SessionState,
)
from kubetest_ec2.interfaces.remote import RemoteRunner
from kubetest_ec2.orchestration.dump import LogDumper
from kubetest_ec2.provisioning.iam import RoleProvisioner
from kubetest_ec2.provisioning.images import ImageResolver
from kubetest_ec2.provisioning.launcher import (
    ROLE_TAG_KEY,
    InstanceLauncher,
    cluster_tag_key,
    pick_subnet,
)
from kubetest_ec2.provisioning.staging import StagingValidator
from kubetest_ec2.provisioning.userdata import UserDataComposer, UserDataInputs
from kubetest_ec2.readiness.gates import (
    CLOUD_INIT_COMMAND,
    CLOUD_INIT_DONE,
    CLOUD_INIT_ERROR,
    GateContext,
)
from kubetest_ec2.readiness.poller import ReadinessPoller
from kubetest_ec2.utils import tokens
from kubetest_ec2.utils.kubeconfig import resolve_kubeconfig_path
from kubetest_ec2.utils.logging import get_logger, log_error
from kubetest_ec2.utils.retry import poll_until

logger = get_logger(__name__)

CCM_NAMESPACE = "kube-system"
CCM_LABEL_SELECTOR = "k8s-app=aws-cloud-controller-manager"


class FleetOrchestrator:
    """Bring a control plane plus N workers up, and tear them down again.

    Collaborators default to real implementations built from the
    configuration; tests inject fakes.
    """

    def __init__(
        self,
        config: DeployerConfig,
        aws_client: AWSClient | None = None,
        runner: RemoteRunner | None = None,
        *,
        session: ClusterSession | None = None,
        roles: RoleProvisioner | None = None,
        images: ImageResolver | None = None,
        staging: StagingValidator | None = None,
        composer: UserDataComposer | None = None,
        launcher: InstanceLauncher | None = None,
        poller: ReadinessPoller | None = None,
        dumper: LogDumper | None = None,
        kubernetes_factory: Callable[[str], KubernetesClient] | None = None,
    ):
        """Initialize fleet orchestrator.

        Args:
            config: Deployer configuration
            aws_client: AWS client (built from ``config.aws`` when omitted)
            runner: Remote runner (SSH as ``config.cluster.ssh_user`` when omitted)
            session: Existing session to operate on
            roles: Role provisioner
            images: Image resolver
            staging: Staging validator
            composer: User data composer
            launcher: Instance launcher
            poller: Readiness poller
            dumper: Log dumper
            kubernetes_factory: Builds a Kubernetes client from a kubeconfig path
        """
        self.config = config
        self.aws_client = aws_client or AWSClient(
            region=config.aws.region, profile=config.aws.profile
        )
        self.runner = runner or SSHRemoteRunner(config.cluster.ssh_user)
        self.session = session or ClusterSession(
            cluster_id=tokens.cluster_id(),
            token=tokens.bootstrap_token(),
            certificate_key=tokens.certificate_key(),
            region=config.aws.region,
        )

        polling = config.polling
        self.roles = roles or RoleProvisioner(self.aws_client)
        self.images = images or ImageResolver(self.aws_client, default_os=config.cluster.os)
        self.staging = staging or StagingValidator(self.aws_client)
        self.composer = composer
        self.launcher = launcher or InstanceLauncher(
            self.aws_client,
            self.roles,
            wait_attempts=max(1, polling.running_timeout_seconds // max(1, polling.running_poll_seconds)),
            wait_interval=polling.running_poll_seconds,
        )
        if poller is None:
            injector = None
            if config.cluster.ec2_instance_connect:
                injector = SSHKeyInjector(
                    self.aws_client,
                    self.runner,
                    config.cluster.ssh_user,
                    key_prefix=config.cluster.ssh_key_prefix,
                )
            poller = ReadinessPoller(
                GateContext(self.aws_client, self.runner, injector), polling, config.output
            )
        self.poller = poller
        self.dumper = dumper or LogDumper(self.runner, config.output.logs_dir)
        self.kubernetes_factory = kubernetes_factory or KubernetesClient
        self.specs: list[ImageSpec] = []

    # Validating

    def validate(self) -> list[ImageSpec]:
        """Resolve, check and render everything before any instance exists.

        Returns:
            One spec per instance, control plane first

        Raises:
            ConfigurationError: If the image, staging location or user data is invalid
            ProvisioningError: If the role or instance profile cannot be ensured
            InstanceLaunchError: If no subnet can be chosen
        """
        self.session.state = SessionState.VALIDATING
        cluster = self.config.cluster
        logger.info(
            "validating_cluster",
            cluster_id=self.session.cluster_id,
            region=self.session.region,
            workers=cluster.num_workers,
        )

        resolved = self.images.resolve(cluster.image, cluster.arch, cluster.instance_type)
        self.staging.validate(self.config.staging.location, self.config.staging.version)
        self.roles.ensure(self.config.aws.role_name, self.config.aws.instance_profile)
        self.session.subnet_id, self.session.vpc_id = pick_subnet(self.aws_client)

        composer = self.composer or UserDataComposer(
            self.config.userdata, os_name=resolved.os or cluster.os
        )
        payloads = composer.compose_all(UserDataInputs.from_config(self.config, self.session))

        def spec(role: InstanceRole, description: str) -> ImageSpec:
            return ImageSpec(
                image_id=resolved.image_id,
                instance_type=resolved.instance_type,
                user_data=payloads[role],
                role=role,
                instance_profile=self.config.aws.instance_profile,
                description=description,
            )

        self.specs = [spec(InstanceRole.CONTROL_PLANE, "control plane")]
        self.specs.extend(
            spec(InstanceRole.WORKER, f"worker {i + 1}") for i in range(cluster.num_workers)
        )
        return self.specs

    # Up

    @staticmethod
    def _first_failure(tasks: list[asyncio.Task[InstanceRecord]]) -> BaseException | None:
        for task in tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                return task.exception()
        return None

    async def _abort(self, tasks: list[asyncio.Task[InstanceRecord]], error: BaseException) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log_error(logger, error, operation="cluster_up", cluster_id=self.session.cluster_id)
        await self.dump_logs()

    async def _launch(self, spec: ImageSpec) -> InstanceRecord:
        record = await asyncio.to_thread(self.launcher.launch, spec, self.session)
        self.session.track(record)
        if spec.is_control_plane:
            if not record.private_ip:
                raise InstanceLaunchError(
                    f"control plane {record.instance_id} has no private IP address"
                )
            self.session.set_control_plane_ip(record.private_ip)
        return record

    async def up(self) -> str:
        """Create the cluster and wait until it is usable.

        Instances are launched one after another, control plane first, and each
        gets its own polling task as soon as it exists. The first task to fail
        cancels the rest; logs are dumped before the error is returned.
        Tearing down is left to the caller.

        Returns:
            Path of the kubeconfig for the new cluster

        Raises:
            KubetestEC2Error: The first fatal error from validation, launch or polling
        """
        specs = await asyncio.to_thread(self.validate)
        self.session.state = SessionState.LAUNCHING

        tasks: list[asyncio.Task[InstanceRecord]] = []
        try:
            for spec in specs:
                failure = self._first_failure(tasks)
                if failure is not None:
                    raise failure
                record = await self._launch(spec)
                logger.info(
                    "instance_started",
                    instance_id=record.instance_id,
                    role=record.role.value,
                    private_ip=record.private_ip,
                )
                tasks.append(
                    asyncio.create_task(
                        self.poller.poll(record, self.session), name=record.instance_id
                    )
                )

            self.session.state = SessionState.POLLING
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            failure = self._first_failure(tasks)
            if failure is not None:
                raise failure
        except Exception as e:
            await self._abort(tasks, e)
            raise

        self.session.state = SessionState.POST_INSTALL
        await self.post_install()
        self.session.state = SessionState.UP
        logger.info(
            "cluster_up",
            cluster_id=self.session.cluster_id,
            instances=len(self.session.instances),
            kubeconfig=self.session.kubeconfig_path,
        )
        return self.kubeconfig()

    # PostInstall

    async def post_install(self) -> None:
        """Wait for cluster-level conditions once every instance is ready.

        Raises:
            ReadinessTimeoutError: If nodes or cloud-provider pods never show up
        """
        client = self.kubernetes_factory(self.kubeconfig())
        await self.wait_for_nodes(client, len(self.session.instances))

        try:
            await self.wait_for_cloud_init()
        except KubetestEC2Error as e:
            logger.warning("cloud_init_wait_failed", error=str(e))

        if self.config.features.external_cloud_provider:
            await self.wait_for_cloud_controller_manager(client)

    def _node_budget(self) -> tuple[int, float]:
        polling = self.config.polling
        interval = polling.node_wait_interval_seconds
        attempts = max(1, int(polling.node_wait_timeout_seconds // max(interval, 1)))
        return attempts, interval

    async def wait_for_nodes(self, client: KubernetesClient, expected: int) -> None:
        """Wait until ``expected`` nodes are registered and all are Ready."""
        attempts, interval = self._node_budget()

        async def check() -> None:
            names = await asyncio.to_thread(client.node_names)
            if len(names) < expected:
                raise GateNotReadyError(
                    "cluster", "node_count", f"{len(names)} of {expected} nodes: {names}"
                )
            ready, unready = await asyncio.to_thread(client.check_nodes_ready)
            if not ready:
                raise GateNotReadyError("cluster", "nodes_ready", f"unready: {unready}")

        try:
            await poll_until(
                check,
                attempts=attempts,
                interval=interval,
                description="cluster nodes",
                retry_on=(GateNotReadyError, KubernetesError),
            )
        except (GateNotReadyError, KubernetesError) as e:
            raise ReadinessTimeoutError("cluster", f"expected {expected} ready nodes", str(e)) from e
        logger.info("cluster_nodes_ready", count=expected)

    async def wait_for_cloud_init(self) -> None:
        """Wait for cloud-init to finish on the control plane.

        Raises:
            CloudInitFailedError: If cloud-init reports an error
            ReadinessTimeoutError: If it does not finish in time
        """
        control_plane = self.session.control_plane
        if control_plane is None:
            raise ReadinessTimeoutError("cluster", "no control plane tracked")

        polling = self.config.polling
        interval = polling.cloud_init_interval_seconds
        attempts = max(1, int(polling.cloud_init_timeout_seconds // max(interval, 1)))

        async def check() -> str:
            try:
                output = await self.runner.run(control_plane.instance_id, CLOUD_INIT_COMMAND)
            except RemoteCommandError as e:
                output = e.output
            if CLOUD_INIT_DONE in output:
                return output
            if CLOUD_INIT_ERROR in output:
                raise CloudInitFailedError(control_plane.instance_id, "cloud-init failed", output)
            raise GateNotReadyError(control_plane.instance_id, "cloud_init_done", output)

        try:
            await poll_until(check, attempts=attempts, interval=interval, description="cloud-init")
        except GateNotReadyError as e:
            raise ReadinessTimeoutError(
                control_plane.instance_id, "cloud-init did not finish", e.output
            ) from e
        logger.info("cloud_init_completed", instance_id=control_plane.instance_id)

    async def wait_for_cloud_controller_manager(self, client: KubernetesClient) -> None:
        """Wait for the external cloud-controller-manager pods to be Ready."""
        attempts, interval = self._node_budget()

        async def check() -> None:
            if not await asyncio.to_thread(client.check_pods_ready, CCM_NAMESPACE, CCM_LABEL_SELECTOR):
                raise GateNotReadyError("cluster", "cloud_controller_manager")

        try:
            await poll_until(
                check,
                attempts=attempts,
                interval=interval,
                description="cloud-controller-manager",
                retry_on=(GateNotReadyError, KubernetesError),
            )
        except (GateNotReadyError, KubernetesError) as e:
            raise ReadinessTimeoutError(
                "cluster", "cloud-controller-manager pods not ready", str(e)
            ) from e
        logger.info("cloud_controller_manager_ready")

    # Down

    async def dump_logs(self) -> None:
        """Collect diagnostics from every tracked instance; never raises."""
        try:
            await self.dumper.dump(list(self.session.instances))
        except Exception as e:
            logger.warning("log_dump_failed", error=str(e))

    async def down(self) -> None:
        """Dump logs, then terminate every tracked instance.

        A failure to terminate one instance does not stop the others.

        Raises:
            TeardownError: If any instance could not be terminated
        """
        self.session.state = SessionState.TEARING_DOWN
        await self.dump_logs()

        failures: dict[str, str] = {}
        for record in list(self.session.instances):
            try:
                await asyncio.to_thread(self.aws_client.terminate_instance, record.instance_id)
            except AWSError as e:
                logger.error("instance_terminate_failed", instance_id=record.instance_id, error=str(e))
                failures[record.instance_id] = str(e)
                continue
            self.session.instances.remove(record)
            logger.info("instance_terminated", instance_id=record.instance_id)

        self.session.state = SessionState.DOWN
        if failures:
            raise TeardownError(failures)

    # IsUp

    async def is_up(self) -> bool:
        """Whether every tracked instance runs and at least one node is registered."""
        if not self.session.instances:
            return False

        for record in self.session.instances:
            try:
                instance = await asyncio.to_thread(
                    self.aws_client.describe_instance, record.instance_id
                )
            except AWSError as e:
                logger.warning("is_up_describe_failed", instance_id=record.instance_id, error=str(e))
                return False
            if instance is None or instance.get("State", {}).get("Name") != "running":
                logger.info("instance_not_running", instance_id=record.instance_id)
                return False

        try:
            client = self.kubernetes_factory(self.kubeconfig())
            nodes = await asyncio.to_thread(client.node_names)
        except KubernetesError as e:
            logger.warning("is_up_get_nodes_failed", error=str(e))
            return False
        return len(nodes) > 0

    # Session management

    def adopt(self, cluster_id: str) -> list[InstanceRecord]:
        """Track the instances a previous run created for ``cluster_id``.

        Args:
            cluster_id: Cluster id used in the membership tag

        Returns:
            The adopted records

        Raises:
            AWSError: If the instances cannot be listed
        """
        self.session.cluster_id = cluster_id
        found = self.aws_client.find_instances_by_tag(cluster_tag_key(cluster_id), "owned")

        key_file = None
        prefix = self.config.cluster.ssh_key_prefix
        if prefix and local_ssh_key_exists(prefix):
            key_file = str(Path.home() / ".ssh" / prefix)

        for instance in found:
            tags = {tag["Key"]: tag["Value"] for tag in instance.get("Tags", [])}
            role = InstanceRole(tags.get(ROLE_TAG_KEY, InstanceRole.WORKER.value))
            record = InstanceRecord(instance_id=instance["InstanceId"], role=role)
            record.update_from_description(instance)
            if record.public_ip:
                self.runner.register_host(record.instance_id, record.public_ip)
            if key_file:
                self.runner.register_key(record.instance_id, key_file)
            if record.is_control_plane and self.session.control_plane is not None:
                record.role = InstanceRole.WORKER
            self.session.track(record)

        logger.info("instances_adopted", cluster_id=cluster_id, count=len(found))
        return list(self.session.instances)

    def kubeconfig(self) -> str:
        """Kubeconfig for the cluster: downloaded, configured, ``$KUBECONFIG`` or default."""
        if self.session.kubeconfig_path:
            return self.session.kubeconfig_path
        return resolve_kubeconfig_path(self.config.output.kubeconfig_path)
