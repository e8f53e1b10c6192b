"""
Error types for the Z Smart Server manager.

This module defines the ManagerError base class and the subclasses used across
release resolution, installation, migration and service management. Callers
should raise these instead of returning ad-hoc status codes; the orchestrator
turns them into a failed cycle outcome naming the stage that failed.
"""

from __future__ import annotations

from typing import Any


class ManagerError(Exception):
    """
    Base exception class for manager errors.

    Attributes:
        error_code: Internal error code string (e.g., "network_error",
            "extract_error", "invalid_version").
        message: Human-readable error message.
        details: Optional structured details (e.g., URLs, paths, versions).

    Example:
        >>> raise ManagerError(
        ...     error_code="extract_error",
        ...     message="Archive is corrupt",
        ...     details={"archive": "/srv/app/.download.zip"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a ManagerError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(ManagerError):
    """Error raised when an operation receives invalid input arguments."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class InvalidVersionError(InvalidArgumentError):
    """
    Error raised when a version string cannot be parsed.

    Versions are dot-separated non-negative integers; any empty or
    non-numeric component is rejected.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidVersionError."""
        super().__init__(message=message, details=details)
        self.error_code = "invalid_version"


class NetworkError(ManagerError):
    """
    Error raised when a remote endpoint cannot be reached.

    Subclasses cover timeouts and download failures so callers can catch
    every network-level problem with a single except clause.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        error_code: str = "network_error",
    ) -> None:
        """Initialize a NetworkError."""
        super().__init__(error_code=error_code, message=message, details=details)


class NetworkTimeoutError(NetworkError):
    """Error raised when a network request exceeds its bounded timeout."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NetworkTimeoutError."""
        super().__init__(message, details, error_code="timeout")


class DownloadError(NetworkError):
    """Error raised when a release asset cannot be downloaded."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DownloadError."""
        super().__init__(message, details, error_code="download_error")


class NotFoundError(ManagerError):
    """Error raised when the release index has no usable release."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class MalformedResponseError(ManagerError):
    """Error raised when the release index returns data missing required fields."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MalformedResponseError."""
        super().__init__(
            error_code="malformed_response", message=message, details=details
        )


class ResolutionFailedError(ManagerError):
    """
    Error raised when a release was found but cannot be installed.

    This happens when no attached asset matches the expected archive
    extension. It is raised before any filesystem mutation.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ResolutionFailedError."""
        super().__init__(
            error_code="resolution_failed", message=message, details=details
        )


class FilesystemError(ManagerError):
    """Error raised for filesystem permission, space or layout problems."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FilesystemError."""
        super().__init__(
            error_code="filesystem_error", message=message, details=details
        )


class ExtractError(ManagerError):
    """Error raised when a downloaded archive is corrupt or unsupported."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an ExtractError."""
        super().__init__(error_code="extract_error", message=message, details=details)


class DependencyInstallError(ManagerError):
    """Error raised when the dependency-installation command fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DependencyInstallError."""
        super().__init__(
            error_code="dependency_install_error", message=message, details=details
        )


class MigrationWarning(ManagerError):
    """
    Non-fatal problem while running data migrations.

    Raised by the migration runner when the external runner script is missing
    or exits with a failure. The orchestrator records it as a warning and
    still commits the version bump.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MigrationWarning."""
        super().__init__(
            error_code="migration_warning", message=message, details=details
        )


class PermissionDeniedError(ManagerError):
    """Error raised when the current user lacks permission for an operation."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PermissionDeniedError."""
        super().__init__(
            error_code="permission_denied", message=message, details=details
        )


class UnavailableError(ManagerError):
    """Error raised when a required external tool or service is unavailable."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(ManagerError):
    """Error raised when the system is not in a state that allows the operation."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )
