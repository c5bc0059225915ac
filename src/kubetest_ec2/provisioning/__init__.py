"""Cloud-side provisioning: IAM, images, staging, user data and instance launch."""
