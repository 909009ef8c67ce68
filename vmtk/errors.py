"""Project-specific exception types."""

from __future__ import annotations


class VMToolkitError(RuntimeError):
    """Base error for domain-level vmtk failures."""


class ConfigError(VMToolkitError):
    """Raised for invalid names, missing keys, or unknown architecture/OS.

    Always raised before any side effect so no partial state is created.
    """


class VMNotFoundError(VMToolkitError):
    """Raised when an operation targets a VM that does not exist."""


class VMStateError(VMToolkitError):
    """Raised when the live status of a VM does not permit an operation."""


class UnsafeOperationError(VMToolkitError):
    """Raised when a destructive operation targets a live VM without force."""


class WaitTimeoutError(VMToolkitError, TimeoutError):
    """Raised when a bounded wait loop exhausts its attempts."""


class BackupError(VMToolkitError):
    """Raised when a backup archive could not be captured."""


class MissingSSHIdentityError(ConfigError):
    """Raised when SSH identity configuration is required but missing."""
