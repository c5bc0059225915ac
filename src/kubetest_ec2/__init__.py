"""kubetest-ec2.

Provision short-lived kubeadm clusters on EC2 instances for end-to-end test runs,
then tear them down and collect their logs.
"""

__version__ = "0.1.0"
__author__ = "Platform Engineering Team"
__license__ = "Apache-2.0"
