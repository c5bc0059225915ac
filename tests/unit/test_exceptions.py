"""Tests for the exception hierarchy."""

from kubetest_ec2.core.exceptions import (
    CloudInitFailedError,
    ConfigurationError,
    GateNotReadyError,
    ImageResolutionError,
    KubetestEC2Error,
    ReadinessError,
    ReadinessTimeoutError,
    RemoteCommandError,
    StagingError,
    TeardownError,
    UnresolvedPlaceholderError,
    UserDataTooLargeError,
)


class TestExceptionHierarchy:
    """Tests for exception inheritance."""

    def test_configuration_errors(self) -> None:
        """Test validation failures are configuration errors."""
        for error in (ImageResolutionError, StagingError):
            assert issubclass(error, ConfigurationError)
        assert isinstance(UserDataTooLargeError("worker", 20000, 16384), ConfigurationError)
        assert isinstance(UnresolvedPlaceholderError(["{{X}}"]), ConfigurationError)

    def test_readiness_errors(self) -> None:
        """Test readiness failures share a base class."""
        for error in (GateNotReadyError, CloudInitFailedError, ReadinessTimeoutError):
            assert issubclass(error, ReadinessError)
        assert issubclass(ReadinessError, KubetestEC2Error)


class TestExceptionMessages:
    """Tests for exception messages and attributes."""

    def test_readiness_error_includes_output(self) -> None:
        """Test the last output is part of the message."""
        error = ReadinessTimeoutError("i-123", "not ready", "  Active: activating\n")
        assert "i-123" in str(error)
        assert "(last output: Active: activating)" in str(error)
        assert error.instance_id == "i-123"

    def test_readiness_error_without_output(self) -> None:
        """Test no output suffix is added when there is none."""
        assert str(ReadinessError("i-1", "boom")) == "instance i-1: boom"

    def test_gate_not_ready(self) -> None:
        """Test gate name is kept."""
        error = GateNotReadyError("i-1", "cloud_init", "activating")
        assert error.gate == "cloud_init"
        assert error.output == "activating"
        assert "gate cloud_init not ready" in str(error)

    def test_remote_command_error(self) -> None:
        """Test command details are kept."""
        error = RemoteCommandError("i-1", "uptime", "connection refused")
        assert error.command == "uptime"
        assert "connection refused" in str(error)

    def test_user_data_too_large(self) -> None:
        """Test size details are kept."""
        error = UserDataTooLargeError("control-plane", 17000, 16384)
        assert error.size == 17000
        assert "17000" in str(error)
        assert "16384" in str(error)

    def test_teardown_error_lists_failures(self) -> None:
        """Test every failed instance is named."""
        error = TeardownError({"i-2": "UnauthorizedOperation"})
        assert "failed to terminate 1 instance(s)" in str(error)
        assert "i-2: UnauthorizedOperation" in str(error)
        assert error.failures == {"i-2": "UnauthorizedOperation"}
