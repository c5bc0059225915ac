"""Clients for AWS, SSH and Kubernetes."""
