from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from depsera.manifest.types import SyncResult, SyncSummary
from depsera.models import ManifestSyncHistory
from depsera.models.manifest import TriggerType
from depsera.stores.sync_history import (
    MAX_HISTORY_LIMIT,
    SyncHistoryRecorder,
    history_errors,
    history_summary,
    history_warnings,
)

from factories import MANIFEST_URL, make_team

TEAM_ID = "team-1"


def _result(status="success", errors=None, warnings=None) -> SyncResult:
    summary = SyncSummary()
    summary.services.created = 2
    return SyncResult(
        status=status,
        summary=summary,
        errors=errors or [],
        warnings=warnings or [],
        duration_ms=120,
    )


def _record_at(recorder, when, status="success"):
    entry = recorder.record(TEAM_ID, TriggerType.SCHEDULED, None, MANIFEST_URL, _result(status))
    entry.created_at = when
    recorder.session.flush()
    return entry


class TestRecord:
    def test_stores_result(self, db_session, team, user):
        recorder = SyncHistoryRecorder(db_session)

        entry = recorder.record(
            TEAM_ID,
            TriggerType.MANUAL,
            user.id,
            MANIFEST_URL,
            _result("partial", errors=["boom"], warnings=["careful"]),
        )

        assert entry.trigger_type == "manual"
        assert entry.triggered_by == user.id
        assert entry.status == "partial"
        assert entry.duration_ms == 120
        assert json.loads(entry.errors) == ["boom"]
        assert history_errors(entry) == ["boom"]
        assert history_warnings(entry) == ["careful"]
        assert history_summary(entry).services.created == 2

    def test_empty_lists_are_stored_as_null(self, db_session, team):
        entry = SyncHistoryRecorder(db_session).record(
            TEAM_ID, "scheduled", None, MANIFEST_URL, _result()
        )

        assert entry.errors is None
        assert entry.warnings is None
        assert history_errors(entry) == []
        assert history_warnings(entry) == []

    def test_uses_supplied_id(self, db_session, team):
        entry = SyncHistoryRecorder(db_session).record(
            TEAM_ID, "manual", None, MANIFEST_URL, _result(), history_id="hist-1"
        )

        assert db_session.get(ManifestSyncHistory, "hist-1") is entry


class TestFindByTeamId:
    def test_newest_first_with_total(self, db_session, team):
        recorder = SyncHistoryRecorder(db_session)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        ids = [_record_at(recorder, base + timedelta(hours=i)).id for i in range(5)]

        page = recorder.find_by_team_id(TEAM_ID, limit=2, offset=1)

        assert page.total == 5
        assert [e.id for e in page.entries] == [ids[3], ids[2]]

    def test_scoped_to_team(self, db_session, team):
        make_team(db_session, "team-2")
        recorder = SyncHistoryRecorder(db_session)
        recorder.record("team-2", "manual", None, MANIFEST_URL, _result())

        page = recorder.find_by_team_id(TEAM_ID)

        assert page.total == 0
        assert page.entries == []

    def test_limit_is_clamped(self, db_session, team):
        recorder = SyncHistoryRecorder(db_session)
        for _ in range(3):
            recorder.record(TEAM_ID, "manual", None, MANIFEST_URL, _result())

        assert len(recorder.find_by_team_id(TEAM_ID, limit=0).entries) == 1
        assert len(recorder.find_by_team_id(TEAM_ID, limit=MAX_HISTORY_LIMIT * 5).entries) == 3


class TestDeleteOlderThan:
    def test_removes_only_old_rows(self, db_session, team):
        recorder = SyncHistoryRecorder(db_session)
        old = _record_at(recorder, datetime(2025, 1, 1, tzinfo=timezone.utc))
        new = _record_at(recorder, datetime(2026, 6, 1, tzinfo=timezone.utc))

        deleted = recorder.delete_older_than("2026-01-01T00:00:00Z")

        assert deleted == 1
        remaining = [e.id for e in db_session.query(ManifestSyncHistory).all()]
        assert remaining == [new.id]
        assert old.id not in remaining


class TestHelpers:
    def test_malformed_json_reads_as_empty(self):
        entry = ManifestSyncHistory(summary="{oops", errors="not json", warnings='{"a": 1}')

        assert history_summary(entry) is None
        assert history_errors(entry) == []
        assert history_warnings(entry) == []
