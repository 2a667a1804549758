"""Centralized exceptions for upkeep.

All project-specific exceptions live in this module. Internal code should
prefer explicit imports:

    from upkeep.core.exception import FormatError
"""

from __future__ import annotations

__all__ = [
    "UpkeepError",
    "FormatError",
    "SignatureError",
    "PathSecurityError",
    "NotFoundError",
    "DownloadIntegrityError",
    "ConfigurationError",
    "FetchError",
    "SyncAborted",
    "LaunchError",
    "UnsatisfiedTransferError",
]


class UpkeepError(Exception):
    """Base class for every error raised by upkeep."""


class FormatError(UpkeepError, ValueError):
    """Raised when a manifest, bundle or key/value document is malformed."""


class SignatureError(UpkeepError):
    """Raised when signature verification was requested and did not pass."""


class PathSecurityError(UpkeepError):
    """Raised when a resolved target path escapes the installation root."""

    def __init__(self, path: str, base: str):
        super().__init__(f"path {path!r} resolves outside of base path {base!r}")
        self.path = path
        self.base = base


class NotFoundError(UpkeepError, FileNotFoundError):
    """Raised when a local file is expected but absent."""


class DownloadIntegrityError(UpkeepError):
    """Raised when fetched bytes do not match the manifest entry."""

    def __init__(self, *, path: str, expected_checksum: int, actual_checksum: int, expected_size: int, actual_size: int):
        msg = (
            f"integrity check failed for {path}: "
            f"checksum expected={expected_checksum:08x} got={actual_checksum:08x} "
            f"size expected={expected_size} got={actual_size}"
        )
        super().__init__(msg)
        self.path = path
        self.expected_checksum = int(expected_checksum)
        self.actual_checksum = int(actual_checksum)
        self.expected_size = int(expected_size)
        self.actual_size = int(actual_size)


class ConfigurationError(UpkeepError, ValueError):
    """Raised when a manifest cannot be built (missing base, duplicate keys, ...)."""


class FetchError(UpkeepError):
    """Raised when the bytes of a remote file cannot be read."""


class SyncAborted(UpkeepError):
    """Raised by an abort-on-first-failure sync; chained from the first error."""

    def __init__(self, message: str, *, result=None):
        super().__init__(message)
        self.result = result


class LaunchError(UpkeepError):
    """Raised when the installed application cannot be launched."""


class UnsatisfiedTransferError(UpkeepError):
    """Raised when a required target field has no matching source field."""

    def __init__(self, field: str, target: object):
        super().__init__(f"required field {field!r} of {type(target).__name__} has no matching source")
        self.field = field
