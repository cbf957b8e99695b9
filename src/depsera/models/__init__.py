from depsera.models.base import Base
from depsera.models.manifest import (
    ACTIVE_FLAG_STATUSES,
    TERMINAL_FLAG_STATUSES,
    DriftFlag,
    DriftFlagStatus,
    DriftType,
    ManifestSyncHistory,
    SyncStatus,
    TeamManifestConfig,
    TriggerType,
)
from depsera.models.services import (
    DEFAULT_POLL_INTERVAL_MS,
    AssociationType,
    CanonicalOverride,
    Dependency,
    DependencyAlias,
    DependencyAssociation,
    Service,
)
from depsera.models.teams import Team, User

__all__ = [
    "ACTIVE_FLAG_STATUSES",
    "TERMINAL_FLAG_STATUSES",
    "AssociationType",
    "Base",
    "CanonicalOverride",
    "DEFAULT_POLL_INTERVAL_MS",
    "Dependency",
    "DependencyAlias",
    "DependencyAssociation",
    "DriftFlag",
    "DriftFlagStatus",
    "DriftType",
    "ManifestSyncHistory",
    "Service",
    "SyncStatus",
    "Team",
    "TeamManifestConfig",
    "TriggerType",
    "User",
]
