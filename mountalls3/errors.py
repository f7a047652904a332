"""Exception hierarchy for mountalls3.

Everything below ``MountAllS3Error`` is recoverable at some granularity
(per group, per profile or per bucket) except ``CommandNotFound``, which
means a required external tool is missing and the run cannot continue.
"""

from __future__ import annotations

from typing import Optional, Sequence


class MountAllS3Error(Exception):
    """Base class for all mountalls3 errors."""


class ConfigError(MountAllS3Error):
    """Missing or malformed grouping document, or an unknown group name."""


class CatalogError(MountAllS3Error):
    """A profile or bucket listing could not be obtained."""

    def __init__(self, message: str, profile: Optional[str] = None):
        super().__init__(message)
        self.profile = profile


class IssuanceFailed(MountAllS3Error):
    """Temporary credentials could not be issued or parsed."""

    def __init__(self, profile: str, reason: str):
        super().__init__(f"credential issuance failed for profile {profile!r}: {reason}")
        self.profile = profile
        self.reason = reason


class MountTimeout(MountAllS3Error):
    """A mount never became live within the verification window."""

    def __init__(self, target: str, command: str, reason: str = "timed out"):
        super().__init__(f"{target}: {reason}")
        self.target = target
        self.command = command
        self.reason = reason


class MountRejected(MountAllS3Error):
    """Unmount refused (busy or not mounted)."""


class IntegrityViolation(MountAllS3Error):
    """Cleanup was about to touch a directory it must never remove."""


class CommandNotFound(MountAllS3Error):
    """A required external executable is not installed."""

    def __init__(self, executable: str):
        super().__init__(f"required command not found: {executable}")
        self.executable = executable


class CommandTimeout(MountAllS3Error):
    """An external command exceeded its time budget."""

    def __init__(self, argv: Sequence[str], timeout: float):
        super().__init__(f"command timed out after {timeout:g}s: {argv[0]}")
        self.argv = list(argv)
        self.timeout = timeout
