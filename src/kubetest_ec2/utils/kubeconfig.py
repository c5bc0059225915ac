"""Kubeconfig handling for the downloaded cluster admin credentials."""

import os
import re
import shutil
import tempfile
from pathlib import Path

from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)

API_SERVER_PORT = 6443
REMOTE_ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"

_SERVER_PATTERN = re.compile(rf"server: https://(.*):{API_SERVER_PORT}")


def rewrite_server(content: str, public_ip: str) -> str:
    """Point every API server URL in a kubeconfig at the given public IP.

    Only the ``server:`` lines change; everything else is returned byte for byte.

    Args:
        content: Kubeconfig text as read from the control plane
        public_ip: Public IP address of the control-plane instance

    Returns:
        Rewritten kubeconfig text
    """
    return _SERVER_PATTERN.sub(f"server: https://{public_ip}:{API_SERVER_PORT}", content)


def write_private_kubeconfig(content: str, path: str | None = None) -> str:
    """Persist kubeconfig content to a file readable only by the current user.

    Args:
        content: Kubeconfig text
        path: Destination path; a new temporary file is created when omitted

    Returns:
        Path of the written file
    """
    if path is None:
        fd, path = tempfile.mkstemp(prefix=".kubeconfig-")
        os.close(fd)
    else:
        Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        path = str(Path(path).expanduser())
        Path(path).touch(mode=0o600, exist_ok=True)

    os.chmod(path, 0o600)
    Path(path).write_text(content)
    logger.info("kubeconfig_written", path=path)
    return path


def default_kubeconfig_path() -> str:
    """Location kubectl uses when no kubeconfig is given explicitly.

    Returns:
        ``$KUBECONFIG`` when set, otherwise ``~/.kube/config``
    """
    env_path = os.environ.get("KUBECONFIG")
    if env_path:
        return env_path
    return str(Path.home() / ".kube" / "config")


def mirror_to_default(path: str, destination: str | None = None) -> str:
    """Copy a kubeconfig to the user's default location.

    Args:
        path: Kubeconfig to copy
        destination: Target path (defaults to ``~/.kube/config``)

    Returns:
        Path the kubeconfig was copied to
    """
    target = Path(destination or Path.home() / ".kube" / "config").expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(path, target)
    os.chmod(target, 0o600)
    logger.info("kubeconfig_mirrored", source=path, destination=str(target))
    return str(target)


def resolve_kubeconfig_path(explicit: str | None) -> str:
    """Resolve which kubeconfig callers should use.

    Args:
        explicit: Path configured by the user, if any

    Returns:
        The explicit path, else ``$KUBECONFIG``, else ``~/.kube/config``
    """
    if explicit:
        return str(Path(explicit).expanduser())
    return default_kubeconfig_path()
