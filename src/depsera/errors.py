"""Exception taxonomy for manifest synchronization."""

from __future__ import annotations

from typing import Any, Optional


class ManifestSyncError(Exception):
    """Base class for manifest sync errors."""


class NotFoundError(ManifestSyncError):
    """A referenced team, service, config or drift flag does not exist."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class FetchFailure(ManifestSyncError):
    """The manifest could not be retrieved or parsed as JSON."""

    def __init__(self, message: str, url: str = ""):
        self.url = url
        super().__init__(message)


class ValidationFailure(ManifestSyncError):
    """The manifest document failed validation."""

    def __init__(self, issues: list[Any], message: Optional[str] = None):
        self.issues = issues
        super().__init__(message or f"Manifest validation failed ({len(issues)} errors)")


class PartialEntryFailure(ManifestSyncError):
    """One manifest entry could not be applied; the rest of the run continues."""

    def __init__(self, manifest_key: str, message: str):
        self.manifest_key = manifest_key
        super().__init__(f'Service "{manifest_key}": {message}')


class ReviewConflictError(ManifestSyncError):
    """A review action targeted a flag that is already accepted or resolved."""
