from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from depsera.manifest.types import SyncResult
from depsera.models import DriftFlag, ManifestSyncHistory
from depsera.models.manifest import DriftFlagStatus, DriftType
from depsera.retention import run_manifest_retention
from depsera.stores.drift_flags import DriftFlagStore
from depsera.stores.sync_history import SyncHistoryRecorder

from factories import MANIFEST_URL, make_service

TEAM_ID = "team-1"
NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def aged(db_session, team):
    """One old and one recent row per status, plus old and recent history."""
    make_service(db_session, TEAM_ID, service_id="svc-1")
    flags = DriftFlagStore(db_session)
    created = {}
    for age, when in (("old", NOW - timedelta(days=200)), ("new", NOW - timedelta(days=5))):
        for status in DriftFlagStatus:
            flag = flags.create(TEAM_ID, "svc-1", DriftType.FIELD_CHANGE, f"{status.value}-{age}")
            flag.status = status.value
            flag.created_at = when
            created[(status.value, age)] = flag.id

    recorder = SyncHistoryRecorder(db_session)
    for when in (NOW - timedelta(days=120), NOW - timedelta(days=1)):
        entry = recorder.record(TEAM_ID, "scheduled", None, MANIFEST_URL, SyncResult(status="success"))
        entry.created_at = when
    db_session.flush()
    return created


class TestRunManifestRetention:
    def test_purges_terminal_flags_and_old_history(self, db_session, aged):
        result = run_manifest_retention(db_session, drift_days=90, history_days=90, now=NOW)

        assert result.drift_flags_deleted == 2
        assert result.history_deleted == 1
        remaining = {row.field_name for row in db_session.query(DriftFlag).all()}
        assert remaining == {
            "pending-old",
            "dismissed-old",
            "pending-new",
            "dismissed-new",
            "accepted-new",
            "resolved-new",
        }
        assert db_session.query(ManifestSyncHistory).count() == 1

    def test_windows_are_independent(self, db_session, aged):
        result = run_manifest_retention(db_session, drift_days=365, history_days=30, now=NOW)

        assert result.drift_flags_deleted == 0
        assert result.history_deleted == 1

    def test_defaults_come_from_environment(self, db_session, aged, monkeypatch):
        monkeypatch.setenv("DRIFT_FLAG_RETENTION_DAYS", "1")
        monkeypatch.setenv("SYNC_HISTORY_RETENTION_DAYS", "365")

        result = run_manifest_retention(db_session, now=NOW)

        assert result.drift_flags_deleted == 4
        assert result.history_deleted == 0
        assert result.drift_cutoff == NOW - timedelta(days=1)

    @pytest.mark.parametrize("drift_days,history_days", [(0, 30), (30, -1)])
    def test_rejects_non_positive_windows(self, db_session, drift_days, history_days):
        with pytest.raises(ValueError):
            run_manifest_retention(db_session, drift_days=drift_days, history_days=history_days)

    def test_as_dict_serializes_cutoffs(self, db_session):
        result = run_manifest_retention(db_session, drift_days=10, history_days=20, now=NOW)

        data = result.as_dict()

        assert data["drift_cutoff"] == (NOW - timedelta(days=10)).isoformat()
        assert data["history_cutoff"] == (NOW - timedelta(days=20)).isoformat()
        assert data["drift_flags_deleted"] == 0
