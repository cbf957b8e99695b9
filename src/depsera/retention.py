"""Age-based cleanup of drift flags and sync history."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from depsera.config import load_settings
from depsera.models.manifest import TERMINAL_FLAG_STATUSES
from depsera.stores.drift_flags import DriftFlagStore
from depsera.stores.sync_history import SyncHistoryRecorder
from depsera.utils.datetime import utc_now

logger = logging.getLogger(__name__)


@dataclass
class RetentionResult:
    drift_flags_deleted: int = 0
    history_deleted: int = 0
    drift_cutoff: Optional[datetime] = None
    history_cutoff: Optional[datetime] = None

    def as_dict(self) -> dict:
        data = asdict(self)
        for key in ("drift_cutoff", "history_cutoff"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def run_manifest_retention(
    session: Session,
    drift_days: Optional[int] = None,
    history_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> RetentionResult:
    """Delete terminal drift flags and history rows past their retention.

    Active flags (``pending``, ``dismissed``) are never removed, whatever
    their age. Days default to the configured retention settings.
    """
    settings = load_settings()
    if drift_days is None:
        drift_days = settings.drift_retention_days
    if history_days is None:
        history_days = settings.history_retention_days
    if drift_days < 1 or history_days < 1:
        raise ValueError("Retention days must be at least 1")

    now = now or utc_now()
    result = RetentionResult(
        drift_cutoff=now - timedelta(days=drift_days),
        history_cutoff=now - timedelta(days=history_days),
    )
    result.drift_flags_deleted = DriftFlagStore(session).delete_older_than(
        result.drift_cutoff, statuses=TERMINAL_FLAG_STATUSES
    )
    result.history_deleted = SyncHistoryRecorder(session).delete_older_than(
        result.history_cutoff
    )
    session.flush()

    logger.info(
        "Manifest retention: deleted %d drift flags older than %s, %d history rows older than %s",
        result.drift_flags_deleted,
        result.drift_cutoff.isoformat(),
        result.history_deleted,
        result.history_cutoff.isoformat(),
    )
    return result
