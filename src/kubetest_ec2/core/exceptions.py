"""Custom exceptions for kubetest-ec2."""


class KubetestEC2Error(Exception):
    """Base exception for all kubetest-ec2 errors."""


class ConfigurationError(KubetestEC2Error):
    """Configuration-related errors."""


class UserDataTooLargeError(ConfigurationError):
    """Rendered user data exceeds the EC2 size ceiling."""

    def __init__(self, role: str, size: int, limit: int):
        """Initialize user data size error.

        Args:
            role: Instance role the payload was rendered for
            size: Rendered payload size in bytes
            limit: Maximum allowed size in bytes
        """
        super().__init__(
            f"user data for {role} is {size} bytes, exceeding the {limit} byte limit"
        )
        self.role = role
        self.size = size
        self.limit = limit


class UnresolvedPlaceholderError(ConfigurationError):
    """Rendered user data still contains template tokens."""

    def __init__(self, tokens: list[str]):
        """Initialize unresolved placeholder error.

        Args:
            tokens: Placeholder tokens left in the payload
        """
        super().__init__(f"unresolved placeholders in user data: {', '.join(tokens)}")
        self.tokens = tokens


class ImageResolutionError(ConfigurationError):
    """Machine image could not be resolved or is malformed."""


class StagingError(ConfigurationError):
    """Staging location or version is missing or unreachable."""


class AWSError(KubetestEC2Error):
    """AWS operation failed."""


class KubernetesError(KubetestEC2Error):
    """Kubernetes API call failed."""


class ProvisioningError(KubetestEC2Error):
    """IAM role or instance profile could not be ensured."""


class InstanceLaunchError(KubetestEC2Error):
    """Instance could not be created."""


class RemoteCommandError(KubetestEC2Error):
    """Command on a remote instance failed."""

    def __init__(self, instance_id: str, command: str, output: str = ""):
        """Initialize remote command error.

        Args:
            instance_id: Instance the command ran on
            command: Command line that was executed
            output: Combined output captured before failure
        """
        super().__init__(f"command {command!r} failed on {instance_id}: {output}")
        self.instance_id = instance_id
        self.command = command
        self.output = output


class ReadinessError(KubetestEC2Error):
    """Instance did not become ready."""

    def __init__(self, instance_id: str, message: str, output: str = ""):
        """Initialize readiness error.

        Args:
            instance_id: Instance that failed
            message: Description of the failure
            output: Last observed command output
        """
        text = f"instance {instance_id}: {message}"
        if output:
            text = f"{text} (last output: {output.strip()})"
        super().__init__(text)
        self.instance_id = instance_id
        self.output = output


class GateNotReadyError(ReadinessError):
    """A readiness gate has not passed yet; the poll loop should retry."""

    def __init__(self, instance_id: str, gate: str, output: str = ""):
        """Initialize gate not ready error.

        Args:
            instance_id: Instance being polled
            gate: Name of the gate that did not pass
            output: Command output that was observed
        """
        super().__init__(instance_id, f"gate {gate} not ready", output)
        self.gate = gate


class CloudInitFailedError(ReadinessError):
    """cloud-init reported an explicit error; the boot script failed."""


class ReadinessTimeoutError(ReadinessError):
    """Readiness polling exhausted its retry budget."""


class TeardownError(KubetestEC2Error):
    """One or more instances could not be terminated."""

    def __init__(self, failures: dict[str, str]):
        """Initialize teardown error.

        Args:
            failures: Mapping of instance id to error message
        """
        details = "; ".join(f"{instance_id}: {error}" for instance_id, error in failures.items())
        super().__init__(f"failed to terminate {len(failures)} instance(s): {details}")
        self.failures = failures
