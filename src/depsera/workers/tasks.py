"""Celery task definitions for manifest sync.

- dispatch_manifest_syncs: find enabled teams whose last sync is due
- run_manifest_sync: run one sync for one team
- run_manifest_retention: purge old drift flags and sync history
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from depsera.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _is_due(last_sync_at: Optional[datetime], now: datetime, interval_seconds: int) -> bool:
    from depsera.utils.datetime import to_utc

    if last_sync_at is None:
        return True
    return to_utc(last_sync_at) <= now - timedelta(seconds=interval_seconds)


@celery_app.task(bind=True)
def dispatch_manifest_syncs(self) -> dict:
    """Check enabled manifest configs and dispatch any that are due."""
    from depsera.config import load_settings
    from depsera.db import session_scope
    from depsera.stores.manifest_config import ManifestConfigStore
    from depsera.utils.datetime import utc_now

    settings = load_settings()
    if not settings.sync_enabled:
        logger.info("Scheduled manifest sync disabled; nothing dispatched")
        return {"dispatched": [], "skipped": 0, "enabled": False}

    now = utc_now()
    dispatched: list[str] = []
    skipped = 0

    try:
        with session_scope() as session:
            for config in ManifestConfigStore(session).find_all_enabled():
                if not _is_due(config.last_sync_at, now, settings.sync_interval_seconds):
                    skipped += 1
                    continue
                run_manifest_sync.apply_async(
                    kwargs={
                        "team_id": config.team_id,
                        "trigger_type": "scheduled",
                    },
                    queue="sync",
                )
                dispatched.append(config.team_id)
    except Exception:
        logger.exception("dispatch_manifest_syncs failed")

    logger.info(
        "Scheduled manifest sync dispatch: dispatched=%d skipped=%d",
        len(dispatched),
        skipped,
    )
    return {"dispatched": dispatched, "skipped": skipped, "enabled": True}


@celery_app.task(bind=True, max_retries=3, queue="sync")
def run_manifest_sync(
    self,
    team_id: str,
    trigger_type: str = "scheduled",
    triggered_by: Optional[str] = None,
) -> dict:
    """Run a manifest sync for one team.

    Fetch and validation failures are ordinary ``failed`` results and are
    not retried; only errors escaping the orchestrator (database down,
    commit failure) are.
    """
    from depsera.db import session_scope
    from depsera.manifest.sync import ManifestSyncOrchestrator
    from depsera.utils.logging import sanitize_for_log

    try:
        with session_scope() as session:
            result = ManifestSyncOrchestrator(session).sync_team(
                team_id, trigger_type=trigger_type, triggered_by=triggered_by
            )
    except Exception as exc:
        logger.exception("Manifest sync task failed for team %s", sanitize_for_log(team_id))
        raise self.retry(exc=exc, countdown=60 * (2**self.request.retries))

    return {
        "team_id": team_id,
        "status": result.status,
        "summary": result.summary.model_dump(),
        "errors": result.errors,
        "warnings": result.warnings,
        "duration_ms": result.duration_ms,
    }


@celery_app.task(bind=True, max_retries=2)
def run_manifest_retention(
    self,
    drift_days: Optional[int] = None,
    history_days: Optional[int] = None,
) -> dict:
    """Delete terminal drift flags and sync history past retention."""
    from depsera.db import session_scope
    from depsera.retention import run_manifest_retention as purge

    try:
        with session_scope() as session:
            result = purge(session, drift_days=drift_days, history_days=history_days)
    except Exception as exc:
        logger.exception("Manifest retention task failed")
        raise self.retry(exc=exc, countdown=300)

    return result.as_dict()
