"""Custom exceptions for Fleetdock."""

from typing import Optional


class FleetdockError(Exception):
    """Base class for errors raised by Fleetdock services."""
    pass


class HostNotFoundError(FleetdockError):
    """Raised when an operation references a host that does not exist."""

    def __init__(self, host_id: int):
        self.host_id = host_id
        super().__init__(f"Host {host_id} not found")


class ContainerNotFoundError(FleetdockError):
    """Raised when an operation references an unknown container record."""

    def __init__(self, container_id: int):
        self.container_id = container_id
        super().__init__(f"Container {container_id} not found")


class OperationNotFoundError(FleetdockError):
    """Raised when an operation log id is unknown."""

    def __init__(self, op_id: str):
        self.op_id = op_id
        super().__init__(f"Operation {op_id} not found")


class CredentialError(FleetdockError):
    """Raised when host credentials cannot be decrypted or are inconsistent."""
    pass


class CommandExecutionError(FleetdockError):
    """Transport-level failure of a remote command.

    Non-zero exit codes are not errors; this covers the cases where the
    command never ran to completion on the remote side: spawn failures,
    rejected authentication, refused or timed out connections.
    """

    def __init__(self, message: str, exit_code: int, stderr: Optional[str] = None):
        self.exit_code = exit_code
        self.stderr = stderr or ""
        super().__init__(message)


class DockerOutputParseError(FleetdockError):
    """Raised when docker CLI output cannot be parsed into the expected shape."""
    pass
