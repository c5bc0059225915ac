"""SSH transport for running commands on cluster instances."""

from __future__ import annotations

import asyncio
import io
import os
import shlex
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import paramiko

from kubetest_ec2.core.exceptions import RemoteCommandError
from kubetest_ec2.interfaces.remote import RemoteRunner
from kubetest_ec2.utils.logging import get_logger

if TYPE_CHECKING:
    from kubetest_ec2.clients.aws_client import AWSClient
    from kubetest_ec2.core.models import InstanceRecord

logger = get_logger(__name__)


def _command_line(args: tuple[str, ...]) -> str:
    if len(args) == 1:
        return args[0]
    return shlex.join(args)


class SSHRemoteRunner(RemoteRunner):
    """Paramiko-backed remote runner.

    Each call opens its own connection, so concurrent polling tasks never share
    a transport.
    """

    def __init__(
        self,
        user: str,
        port: int = 22,
        connect_timeout: float = 10.0,
        command_timeout: float = 300.0,
    ):
        """Initialize SSH runner.

        Args:
            user: Login user on the instances
            port: SSH port
            connect_timeout: Seconds to wait for the TCP/SSH handshake
            command_timeout: Seconds to wait for a command to finish
        """
        self.user = user
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._hosts: dict[str, str] = {}
        self._keys: dict[str, str] = {}

    def register_host(self, instance_id: str, host: str) -> None:
        """Record the address used to reach an instance."""
        if self._hosts.get(instance_id) != host:
            logger.info("remote_host_registered", instance_id=instance_id, host=host)
        self._hosts[instance_id] = host

    def register_key(self, instance_id: str, key_file: str) -> None:
        """Record the private key used for an instance."""
        self._keys[instance_id] = key_file

    def host_for(self, instance_id: str) -> str | None:
        """Registered address of an instance, if any."""
        return self._hosts.get(instance_id)

    def _connect(self, instance_id: str) -> paramiko.SSHClient:
        host = self._hosts.get(instance_id)
        if host is None:
            raise RemoteCommandError(instance_id, "connect", "no host registered for instance")

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict = {
            "hostname": host,
            "port": self.port,
            "username": self.user,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
        }
        key_file = self._keys.get(instance_id)
        if key_file:
            kwargs["key_filename"] = key_file
            kwargs["look_for_keys"] = False
        try:
            client.connect(**kwargs)
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteCommandError(instance_id, "connect", str(e)) from e
        return client

    def _run_sync(self, instance_id: str, command: str) -> str:
        client = self._connect(instance_id)
        try:
            logger.debug("remote_command", instance_id=instance_id, command=command)
            _, stdout, stderr = client.exec_command(command, timeout=self.command_timeout)
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteCommandError(instance_id, command, str(e)) from e
        finally:
            client.close()

        output = out + err
        if code != 0:
            raise RemoteCommandError(instance_id, command, output)
        return output

    async def run(self, instance_id: str, *args: str) -> str:
        """Run a command over SSH and return its combined output."""
        return await asyncio.to_thread(self._run_sync, instance_id, _command_line(args))

    def _download(self, sftp: paramiko.SFTPClient, remote: str, local: Path) -> int:
        attrs = sftp.stat(remote)
        if attrs.st_mode is not None and stat.S_ISDIR(attrs.st_mode):
            local.mkdir(parents=True, exist_ok=True)
            copied = 0
            for entry in sftp.listdir(remote):
                copied += self._download(sftp, str(PurePosixPath(remote) / entry), local / entry)
            return copied
        local.parent.mkdir(parents=True, exist_ok=True)
        sftp.get(remote, str(local))
        return 1

    def _copy_sync(self, instance_id: str, remote_glob: str, local_dir: str) -> str:
        # expand the glob remotely; sftp has no globbing
        listing = self._run_sync(instance_id, f"sh -c 'ls -d {remote_glob}'")
        paths = [line.strip() for line in listing.splitlines() if line.strip()]

        client = self._connect(instance_id)
        try:
            sftp = client.open_sftp()
            try:
                copied = 0
                for path in paths:
                    name = PurePosixPath(path.rstrip("/")).name
                    copied += self._download(sftp, path, Path(local_dir) / name)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteCommandError(instance_id, f"copy {remote_glob}", str(e)) from e
        finally:
            client.close()
        return f"copied {copied} file(s) from {remote_glob} to {local_dir}"

    async def copy_from(self, instance_id: str, remote_glob: str, local_dir: str) -> str:
        """Copy remote files matching a glob into a local directory."""
        return await asyncio.to_thread(self._copy_sync, instance_id, remote_glob, local_dir)


@dataclass
class TemporarySSHKey:
    """SSH key pair used to reach the instances."""

    public: str
    private: str
    pkey: paramiko.PKey
    private_key_path: str | None = None


def generate_ssh_keypair(bits: int = 2048) -> TemporarySSHKey:
    """Generate a fresh RSA key pair.

    Args:
        bits: Key size

    Returns:
        Key with OpenSSH public half and PEM private half
    """
    key = paramiko.RSAKey.generate(bits)
    buffer = io.StringIO()
    key.write_private_key(buffer)
    return TemporarySSHKey(
        public=f"{key.get_name()} {key.get_base64()}",
        private=buffer.getvalue(),
        pkey=key,
    )


def local_ssh_key_exists(key_prefix: str) -> bool:
    """Whether ``~/.ssh/<prefix>`` and its ``.pub`` both exist."""
    ssh_dir = Path.home() / ".ssh"
    return (ssh_dir / key_prefix).exists() and (ssh_dir / f"{key_prefix}.pub").exists()


def load_existing_ssh_key(key_prefix: str) -> TemporarySSHKey:
    """Load ``~/.ssh/<prefix>`` and its public half.

    Args:
        key_prefix: File name of the private key under ``~/.ssh``

    Returns:
        Loaded key

    Raises:
        RemoteCommandError: If the key files cannot be read or parsed
    """
    private_path = Path.home() / ".ssh" / key_prefix
    try:
        public = (Path.home() / ".ssh" / f"{key_prefix}.pub").read_text().strip()
        private = private_path.read_text()
        pkey = paramiko.PKey.from_path(private_path)
    except (OSError, paramiko.SSHException) as e:
        raise RemoteCommandError("local", f"load key {private_path}", str(e)) from e
    return TemporarySSHKey(
        public=public, private=private, pkey=pkey, private_key_path=str(private_path)
    )


def write_private_key(private: str) -> str:
    """Persist a private key to a temp file only the owner can read.

    Args:
        private: PEM encoded private key

    Returns:
        Path of the key file
    """
    fd, path = tempfile.mkstemp(prefix=".ssh-key-")
    with os.fdopen(fd, "w") as f:
        f.write(private)
    os.chmod(path, 0o400)
    return path


class SSHKeyInjector:
    """Give an instance a login key through EC2 Instance Connect.

    Instance Connect only honours a pushed key for about 60 seconds, so the
    injector uses that window to append the key to ``~/.ssh/authorized_keys``.
    """

    def __init__(
        self,
        aws_client: AWSClient,
        runner: RemoteRunner,
        ssh_user: str,
        key_prefix: str | None = None,
        connect_timeout: float = 10.0,
    ):
        """Initialize key injector.

        Args:
            aws_client: AWS client used for send_ssh_public_key
            runner: Remote runner the key file is registered with
            ssh_user: Login user on the instances
            key_prefix: Reuse ``~/.ssh/<prefix>`` instead of generating keys
            connect_timeout: SSH connect timeout in seconds
        """
        self.aws_client = aws_client
        self.runner = runner
        self.ssh_user = ssh_user
        self.key_prefix = key_prefix
        self.connect_timeout = connect_timeout

    def _key(self) -> TemporarySSHKey:
        if self.key_prefix and local_ssh_key_exists(self.key_prefix):
            return load_existing_ssh_key(self.key_prefix)
        return generate_ssh_keypair()

    def inject(self, record: InstanceRecord) -> None:
        """Install a key on the instance and register it with the runner.

        Args:
            record: Instance with public IP and availability zone known

        Raises:
            RemoteCommandError: If the key cannot be installed
            AWSError: If Instance Connect rejects the key
        """
        if not record.public_ip or not record.availability_zone:
            raise RemoteCommandError(
                record.instance_id, "inject ssh key", "public IP or availability zone unknown"
            )

        key = self._key()
        self.aws_client.send_ssh_public_key(
            record.instance_id, self.ssh_user, key.public, record.availability_zone
        )

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        command = f"echo '{key.public.strip()}' >> ~/.ssh/authorized_keys"
        try:
            client.connect(
                hostname=record.public_ip,
                username=self.ssh_user,
                pkey=key.pkey,
                timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
            _, stdout, stderr = client.exec_command(command, timeout=30)
            code = stdout.channel.recv_exit_status()
            if code != 0:
                raise RemoteCommandError(
                    record.instance_id, "register ssh key", stderr.read().decode(errors="replace")
                )
        except (paramiko.SSHException, OSError) as e:
            raise RemoteCommandError(record.instance_id, "register ssh key", str(e)) from e
        finally:
            client.close()

        key_file = key.private_key_path or write_private_key(key.private)
        record.ssh_public_key = key.public
        record.ssh_key_file = key_file
        self.runner.register_key(record.instance_id, key_file)
        logger.info("ssh_key_injected", instance_id=record.instance_id, key_file=key_file)
