"""Core exceptions for DeployPilot."""

from typing import Optional


class DeployPilotError(Exception):
    """Base exception for all DeployPilot errors."""

    def __init__(self, message: str, details: dict = None):
        """Initialize the exception."""
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DeployPilotError):
    """Raised when a deployment request is malformed or incomplete."""

    pass


class ConfigurationError(DeployPilotError):
    """Raised when configuration is invalid."""

    pass


class NotFoundError(DeployPilotError):
    """Raised when a resource is not found."""

    pass


class SecretFetchError(DeployPilotError):
    """Raised when the secret source is unreachable or returns malformed data."""

    pass


class SideEffectError(DeployPilotError):
    """Raised when a best-effort post action (DNS, notification) fails."""

    pass


class RemoteExecutionError(DeployPilotError):
    """
    Raised when the remote command fails or the connection cannot be made.

    Whatever output was captured before the failure is kept on ``output`` so
    callers can classify the failure.
    """

    hint = ""

    def __init__(self, message: str, output: str = "", details: dict = None):
        """Initialize the exception."""
        super().__init__(message, details)
        self.output = output or ""


class AuthenticationError(RemoteExecutionError):
    """Raised when public-key authentication is rejected."""

    hint = "Check SSH key permissions and repository access."


class HostVerificationError(RemoteExecutionError):
    """Raised when the remote host key cannot be verified."""

    hint = "Add the host to known_hosts or disable strict checking."


class SourceControlError(RemoteExecutionError):
    """Raised when git reports a fatal error on the remote side."""

    hint = "Check that the branch and commit exist and are reachable."


class ConnectionFailedError(RemoteExecutionError):
    """Raised when the SSH connection or session cannot be established."""

    pass


class CommandExitError(RemoteExecutionError):
    """Raised when the remote command exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        exit_status: Optional[int] = None,
        output: str = "",
        details: dict = None,
    ):
        """Initialize the exception."""
        super().__init__(message, output=output, details=details)
        self.exit_status = exit_status


class CommandTimeoutError(RemoteExecutionError):
    """Raised when the remote command exceeds its timeout."""

    pass


class CommandCancelledError(RemoteExecutionError):
    """Raised when the caller aborts a running remote command."""

    pass
