"""Validation of names that end up inside remote shell commands."""

import re


class ValidationError(Exception):
    """Raised when validation fails."""
    pass


def validate_container_name(name: str) -> str:
    """Validate container name for safe use in Docker commands.

    Raises:
        ValidationError: If name contains invalid characters or patterns
    """
    if not name:
        raise ValidationError("Container name cannot be empty")

    # Reject names starting with dash (could be interpreted as flag)
    if name.startswith("-"):
        raise ValidationError("Container name cannot start with dash")

    if not re.match(r'^[a-zA-Z0-9_][a-zA-Z0-9_.-]*$', name):
        raise ValidationError(
            "Container name must contain only alphanumeric characters, "
            "underscores, dashes, and dots"
        )

    if len(name) > 255:
        raise ValidationError("Container name too long (max 255 characters)")

    return name


def validate_service_name(name: str) -> str:
    """Validate compose service or project name.

    Compose normalizes project names to lowercase alphanumerics, dashes and
    underscores; service names follow the same alphabet plus dots.

    Raises:
        ValidationError: If name contains invalid characters
    """
    if not name:
        raise ValidationError("Service name cannot be empty")

    if name.startswith("-"):
        raise ValidationError("Service name cannot start with dash")

    if not re.match(r'^[a-zA-Z0-9_.-]+$', name):
        raise ValidationError(
            "Service name must contain only alphanumeric characters, "
            "underscores, dots, and dashes"
        )

    if len(name) > 255:
        raise ValidationError("Service name too long (max 255 characters)")

    return name


def validate_working_dir(path: str) -> str:
    """Validate a remote compose working directory.

    The directory lives on the remote host, so it is only checked for shape:
    absolute, no NUL bytes, no newlines.

    Raises:
        ValidationError: If the path is unusable
    """
    if not path:
        raise ValidationError("Working directory cannot be empty")

    if any(ch in path for ch in ("\x00", "\n", "\r")):
        raise ValidationError("Working directory contains forbidden characters")

    if not path.startswith("/"):
        raise ValidationError("Working directory must be an absolute path")

    return path
