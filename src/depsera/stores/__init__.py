from depsera.stores.drift_flags import (
    DriftFlagPage,
    DriftFlagStore,
    DriftFlagWithContext,
    DriftSummary,
    UpsertResult,
)
from depsera.stores.manifest_config import ManifestConfigStore
from depsera.stores.services import ServiceStore
from depsera.stores.sync_history import SyncHistoryPage, SyncHistoryRecorder

__all__ = [
    "DriftFlagPage",
    "DriftFlagStore",
    "DriftFlagWithContext",
    "DriftSummary",
    "ManifestConfigStore",
    "ServiceStore",
    "SyncHistoryPage",
    "SyncHistoryRecorder",
    "UpsertResult",
]
