"""Append-only log of manifest sync runs."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy.orm import Session

from depsera.manifest.types import SyncResult, SyncSummary, decode_string_list
from depsera.models.manifest import ManifestSyncHistory, TriggerType
from depsera.utils.datetime import parse_cutoff, utc_now

DEFAULT_HISTORY_LIMIT = 20
MAX_HISTORY_LIMIT = 100


@dataclass
class SyncHistoryPage:
    entries: list[ManifestSyncHistory]
    total: int


class SyncHistoryRecorder:
    def __init__(self, session: Session):
        self.session = session

    def record(
        self,
        team_id: str,
        trigger_type: Union[TriggerType, str],
        triggered_by: Optional[str],
        manifest_url: str,
        result: SyncResult,
        history_id: Optional[str] = None,
    ) -> ManifestSyncHistory:
        """Insert one history row for a finished run.

        ``history_id`` lets the orchestrator hand out the id to drift flags
        before the row itself is written.
        """
        entry = ManifestSyncHistory(
            team_id=team_id,
            trigger_type=str(getattr(trigger_type, "value", trigger_type)),
            triggered_by=triggered_by,
            manifest_url=manifest_url,
            status=result.status,
            summary=result.summary.to_json(),
            errors=json.dumps(result.errors) if result.errors else None,
            warnings=json.dumps(result.warnings) if result.warnings else None,
            duration_ms=result.duration_ms,
            created_at=utc_now(),
        )
        if history_id:
            entry.id = history_id
        self.session.add(entry)
        self.session.flush()
        return entry

    def find_by_team_id(
        self, team_id: str, limit: int = DEFAULT_HISTORY_LIMIT, offset: int = 0
    ) -> SyncHistoryPage:
        limit = min(max(limit, 1), MAX_HISTORY_LIMIT)
        offset = max(offset, 0)
        query = self.session.query(ManifestSyncHistory).filter(
            ManifestSyncHistory.team_id == team_id
        )
        total = query.count()
        entries = (
            query.order_by(
                ManifestSyncHistory.created_at.desc(), ManifestSyncHistory.id.desc()
            )
            .limit(limit)
            .offset(offset)
            .all()
        )
        return SyncHistoryPage(entries=entries, total=total)

    def delete_older_than(self, cutoff: Union[str, datetime]) -> int:
        return (
            self.session.query(ManifestSyncHistory)
            .filter(ManifestSyncHistory.created_at < parse_cutoff(cutoff))
            .delete(synchronize_session=False)
        )


def history_summary(entry: ManifestSyncHistory) -> Optional[SyncSummary]:
    return SyncSummary.from_json(entry.summary)


def history_errors(entry: ManifestSyncHistory) -> list[str]:
    return decode_string_list(entry.errors)


def history_warnings(entry: ManifestSyncHistory) -> list[str]:
    return decode_string_list(entry.warnings)
