"""Interfaces for collaborators the deployer drives but does not implement."""

from kubetest_ec2.interfaces.remote import RemoteRunner

__all__ = ["RemoteRunner"]
