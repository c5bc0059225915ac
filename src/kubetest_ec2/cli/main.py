"""Main CLI entry point for kubetest-ec2."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, NoReturn

import click
from rich.console import Console

from kubetest_ec2 import __version__
from kubetest_ec2.core.exceptions import KubetestEC2Error

if TYPE_CHECKING:
    from kubetest_ec2.core.config import DeployerConfig
    from kubetest_ec2.orchestration.fleet import FleetOrchestrator

console = Console(stderr=True)


class KubetestContext:
    """Shared context for CLI commands with lazy initialization."""

    def __init__(self, config_path: str | None, region: str | None, log_level: str | None):
        """Initialize context.

        Args:
            config_path: Path to configuration file (optional)
            region: Region overriding the configured one
            log_level: Log level overriding the configured one
        """
        self.config_path = config_path
        self.region = region
        self.log_level = log_level
        self._config: DeployerConfig | None = None

    @property
    def config(self) -> DeployerConfig:
        """Load config once and configure logging from it."""
        if self._config is None:
            from kubetest_ec2.core.config import DeployerConfig
            from kubetest_ec2.utils.logging import setup_logging

            config = DeployerConfig.from_file(self.config_path) if self.config_path else DeployerConfig()
            if self.region:
                config.aws.region = self.region
            if self.log_level:
                config.logging.level = self.log_level
            setup_logging(config.logging.level, config.logging.format, config.logging.output)
            self._config = config
        return self._config

    def orchestrator(self) -> FleetOrchestrator:
        """Build an orchestrator for the current configuration."""
        from kubetest_ec2.orchestration.fleet import FleetOrchestrator

        return FleetOrchestrator(self.config)


def _fail(message: str) -> NoReturn:
    console.print(f"[red]✗ {message}[/red]")
    raise SystemExit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to configuration file",
)
@click.option("--region", default=None, help="AWS region (overrides configuration)")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (overrides configuration)",
)
@click.pass_context
def cli(ctx: click.Context, config: str | None, region: str | None, log_level: str | None) -> None:
    """kubetest-ec2 - short-lived kubeadm clusters on EC2 for end-to-end tests."""
    ctx.obj = KubetestContext(config_path=config, region=region, log_level=log_level)


@cli.command()
@click.option("--num-workers", type=int, default=None, help="Number of worker instances")
@click.option("--image", default=None, help="AMI id or OS name (ubuntu2404, ubuntu2204, al2023)")
@click.option("--instance-type", default=None, help="EC2 instance type")
@click.option("--arch", type=click.Choice(["amd64", "arm64"]), default=None, help="Architecture")
@click.option("--stage-location", default=None, help="Bucket or URL holding staged binaries")
@click.option("--stage-version", default=None, help="Staged Kubernetes version")
@click.option("--down-on-failure", is_flag=True, help="Tear the cluster down if Up fails")
@click.pass_context
def up(
    ctx: click.Context,
    num_workers: int | None,
    image: str | None,
    instance_type: str | None,
    arch: str | None,
    stage_location: str | None,
    stage_version: str | None,
    down_on_failure: bool,
) -> None:
    """Launch a cluster and wait until it is ready."""
    kubetest_ctx: KubetestContext = ctx.obj
    try:
        config = kubetest_ctx.config
    except KubetestEC2Error as e:
        _fail(str(e))

    cluster = config.cluster
    if num_workers is not None:
        cluster.num_workers = num_workers
    if image is not None:
        cluster.image = image
    if instance_type is not None:
        cluster.instance_type = instance_type
    if arch is not None:
        cluster.arch = arch
    if stage_location is not None:
        config.staging.location = stage_location
    if stage_version is not None:
        config.staging.version = stage_version

    orchestrator = kubetest_ctx.orchestrator()
    console.print(f"[bold blue]Bringing up cluster {orchestrator.session.cluster_id}[/bold blue]")
    console.print(f"Region: {config.aws.region}")
    console.print(f"Workers: {cluster.num_workers}\n")

    async def _up() -> str:
        try:
            return await orchestrator.up()
        except KubetestEC2Error:
            if down_on_failure and orchestrator.session.instances:
                console.print("[yellow]Up failed, tearing down...[/yellow]")
                try:
                    await orchestrator.down()
                except KubetestEC2Error as down_error:
                    console.print(f"[red]✗ Teardown incomplete: {down_error}[/red]")
            raise

    try:
        kubeconfig = asyncio.run(_up())
    except KubetestEC2Error as e:
        _fail(f"Up failed: {e}")

    console.print("[green]✓ Cluster is up[/green]")
    console.print(f"  Cluster ID: {orchestrator.session.cluster_id}")
    console.print(f"  Kubeconfig: {kubeconfig}")
    click.echo(kubeconfig)


@cli.command()
@click.option("--cluster-id", required=True, help="Cluster id printed by 'up'")
@click.pass_context
def down(ctx: click.Context, cluster_id: str) -> None:
    """Dump logs from and terminate every instance of a cluster."""
    kubetest_ctx: KubetestContext = ctx.obj
    try:
        orchestrator = kubetest_ctx.orchestrator()
        instances = orchestrator.adopt(cluster_id)
    except KubetestEC2Error as e:
        _fail(str(e))

    if not instances:
        console.print(f"[yellow]No instances found for cluster {cluster_id}[/yellow]")
        return

    console.print(f"[bold]Tearing down {len(instances)} instance(s) of {cluster_id}[/bold]")
    try:
        asyncio.run(orchestrator.down())
    except KubetestEC2Error as e:
        _fail(str(e))
    console.print("[green]✓ Cluster is down[/green]")


@cli.command(name="is-up")
@click.option("--cluster-id", required=True, help="Cluster id printed by 'up'")
@click.option("--kubeconfig", default=None, help="Kubeconfig for the cluster")
@click.pass_context
def is_up(ctx: click.Context, cluster_id: str, kubeconfig: str | None) -> None:
    """Exit 0 if the cluster is running and has nodes, 1 otherwise."""
    kubetest_ctx: KubetestContext = ctx.obj
    try:
        if kubeconfig:
            kubetest_ctx.config.output.kubeconfig_path = kubeconfig
        orchestrator = kubetest_ctx.orchestrator()
        orchestrator.adopt(cluster_id)
        result = asyncio.run(orchestrator.is_up())
    except KubetestEC2Error as e:
        _fail(str(e))

    if not result:
        _fail(f"Cluster {cluster_id} is not up")
    console.print(f"[green]✓ Cluster {cluster_id} is up[/green]")


@cli.command(name="render-userdata")
@click.option(
    "--role",
    type=click.Choice(["control-plane", "worker"]),
    default="control-plane",
    help="Role to render user data for",
)
@click.option("--control-plane-ip", default="10.0.0.10", help="Control-plane IP for workers")
@click.option("--os", "os_name", default=None, help="OS template (defaults to configuration)")
@click.pass_context
def render_userdata(ctx: click.Context, role: str, control_plane_ip: str, os_name: str | None) -> None:
    """Print the rendered user data for one role."""
    from kubetest_ec2.core.models import ClusterSession, InstanceRole
    from kubetest_ec2.provisioning.userdata import UserDataComposer, UserDataInputs
    from kubetest_ec2.utils import tokens

    kubetest_ctx: KubetestContext = ctx.obj
    try:
        config = kubetest_ctx.config
        session = ClusterSession(
            cluster_id=tokens.cluster_id(),
            token=tokens.bootstrap_token(),
            certificate_key=tokens.certificate_key(),
            region=config.aws.region,
        )
        instance_role = InstanceRole(role)
        composer = UserDataComposer(config.userdata, os_name=os_name or config.cluster.os)
        payload = composer.compose(instance_role, UserDataInputs.from_config(config, session))
        ip = None if instance_role is InstanceRole.CONTROL_PLANE else control_plane_ip
        click.echo(UserDataComposer.finalize(payload, ip), nl=False)
    except KubetestEC2Error as e:
        _fail(str(e))


if __name__ == "__main__":
    cli()
