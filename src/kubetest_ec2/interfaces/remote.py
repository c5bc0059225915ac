"""Remote execution interface."""

from abc import ABC, abstractmethod


class RemoteRunner(ABC):
    """Runs commands on, and copies files from, tracked instances.

    Instances are addressed by instance id. The readiness poller registers the
    host (public IP) and the private key file for each instance as it learns
    them; every later call looks them up by id.
    """

    @abstractmethod
    def register_host(self, instance_id: str, host: str) -> None:
        """Record the address used to reach an instance.

        Args:
            instance_id: Instance id
            host: Public IP or DNS name
        """

    @abstractmethod
    def register_key(self, instance_id: str, key_file: str) -> None:
        """Record the private key file used to authenticate to an instance.

        Args:
            instance_id: Instance id
            key_file: Path to a private key
        """

    @abstractmethod
    async def run(self, instance_id: str, *args: str) -> str:
        """Run a command and return its combined output.

        A single argument is passed to the remote shell as-is; several
        arguments are shell-quoted and joined.

        Args:
            instance_id: Instance id
            *args: Command line

        Returns:
            Combined stdout and stderr

        Raises:
            RemoteCommandError: If the connection fails or the command exits non-zero
        """

    @abstractmethod
    async def copy_from(self, instance_id: str, remote_glob: str, local_dir: str) -> str:
        """Copy remote files or directories matching a glob into a local directory.

        Args:
            instance_id: Instance id
            remote_glob: Remote path or glob
            local_dir: Destination directory

        Returns:
            Description of what was copied

        Raises:
            RemoteCommandError: If the copy fails
        """
