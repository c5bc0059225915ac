"""Random identifiers and secrets for a cluster session."""

import secrets
import uuid

_CHARSET = "0123456789abcdefghijklmnopqrstuvwxyz"


def random_string(length: int) -> str:
    """Random lowercase alphanumeric string.

    Args:
        length: Number of characters

    Returns:
        Random string drawn from ``[0-9a-z]``
    """
    return "".join(secrets.choice(_CHARSET) for _ in range(length))


def bootstrap_token() -> str:
    """kubeadm bootstrap token in ``[a-z0-9]{6}.[a-z0-9]{16}`` form."""
    return f"{random_string(6)}.{random_string(16)}"


def certificate_key() -> str:
    """kubeadm certificate key: 32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def cluster_id(prefix: str = "kt2-") -> str:
    """Unique cluster identifier used for tags and instance names."""
    return prefix + uuid.uuid4().hex[:8]
