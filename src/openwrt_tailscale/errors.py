"""Error taxonomy for install and upgrade runs.

Every fatal condition is an ``InstallerError``; the orchestrator turns it
into a failed ``InstallResult`` and the CLI into a non-zero exit status.
"""

from __future__ import annotations


class InstallerError(Exception):
    """Base class for fatal installer conditions."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UnsupportedPlatform(InstallerError):
    """The host is not an OpenWrt system or its CPU is not supported."""


class DependencyError(InstallerError):
    """A required OS package could not be installed."""


class NetworkError(InstallerError):
    """Release metadata or archive could not be fetched."""


class ParseError(InstallerError):
    """Release metadata is malformed or carries no version."""


class AssetNotFound(InstallerError):
    """No release artifact matches the requested version and architecture."""

    def __init__(self, reason: str, available: list[str] | None = None) -> None:
        super().__init__(reason)
        self.available = available or []


class ExtractionError(InstallerError):
    """The downloaded archive could not be unpacked."""


class VerificationError(InstallerError):
    """Expected binaries are missing after extraction."""


class ActivationError(InstallerError):
    """Service start, authentication or autostart failed."""


class ConfigStoreError(InstallerError):
    """The persisted configuration store rejected a read or write."""


class RollbackError(InstallerError):
    """Restoring part of a snapshot failed; the original failure is kept."""
