from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from depsera.errors import NotFoundError
from depsera.models import DriftFlag
from depsera.stores.drift_flags import MAX_LIST_LIMIT, DriftFlagStore
from depsera.utils.datetime import to_utc

from factories import make_service, make_team, make_user

TEAM_ID = "team-1"


@pytest.fixture
def store(db_session):
    return DriftFlagStore(db_session)


@pytest.fixture
def service(db_session, team):
    return make_service(
        db_session, TEAM_ID, service_id="svc-1", name="Old", manifest_key="checkout", managed=True
    )


def _active_count(session, service_id, field_name=None, drift_type="field_change"):
    query = session.query(DriftFlag).filter(
        DriftFlag.service_id == service_id,
        DriftFlag.drift_type == drift_type,
        DriftFlag.status.in_(("pending", "dismissed")),
    )
    if field_name is not None:
        query = query.filter(DriftFlag.field_name == field_name)
    return query.count()


class TestCreate:
    def test_new_flag_is_pending_with_matching_timestamps(self, store, service):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", '"New"', '"Old"')

        assert flag.status == "pending"
        assert flag.first_detected_at == flag.last_detected_at
        assert flag.resolved_at is None
        assert flag.resolved_by is None

    def test_removal_flag_has_no_field_values(self, store, service):
        flag = store.create(TEAM_ID, service.id, "service_removal")

        assert flag.field_name is None
        assert flag.manifest_value is None
        assert flag.current_value is None


class TestStateMachine:
    @pytest.mark.parametrize(
        "source,target,expected",
        [
            ("pending", "dismissed", True),
            ("pending", "accepted", True),
            ("pending", "resolved", False),
            ("dismissed", "resolved", True),
            ("dismissed", "accepted", False),
            ("dismissed", "dismissed", False),
            ("accepted", "dismissed", False),
            ("accepted", "resolved", False),
            ("resolved", "accepted", False),
            ("pending", "pending", False),
        ],
    )
    def test_resolve_transitions(self, db_session, store, service, source, target, expected):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        flag.status = source
        db_session.flush()

        assert store.resolve(flag.id, target, None) is expected
        assert flag.status == (target if expected else source)

    def test_resolve_sets_resolver_and_time(self, db_session, store, service, user):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")

        assert store.resolve(flag.id, "dismissed", user.id) is True
        db_session.refresh(flag)
        assert flag.resolved_by == user.id
        assert flag.resolved_at is not None

    def test_resolve_unknown_flag_returns_false(self, store):
        assert store.resolve("missing", "accepted", None) is False

    def test_terminal_flags_are_immutable(self, db_session, store, service, user):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        store.resolve(flag.id, "accepted", user.id)
        db_session.refresh(flag)
        resolved_at = flag.resolved_at

        assert store.resolve(flag.id, "dismissed", None) is False
        assert store.resolve(flag.id, "resolved", None) is False
        assert store.reopen(flag.id) is False
        db_session.refresh(flag)
        assert flag.status == "accepted"
        assert flag.resolved_by == user.id
        assert flag.resolved_at == resolved_at

    def test_reopen_only_from_dismissed(self, db_session, store, service, user):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        assert store.reopen(flag.id) is False

        store.resolve(flag.id, "dismissed", user.id)
        assert store.reopen(flag.id) is True
        db_session.refresh(flag)
        assert flag.status == "pending"
        assert flag.resolved_at is None
        assert flag.resolved_by is None

    def test_bulk_resolve_skips_illegal_ids(self, db_session, store, service):
        a = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        b = store.create(TEAM_ID, service.id, "field_change", "description", "c", "d")
        store.resolve(a.id, "accepted", None)

        assert store.bulk_resolve([a.id, b.id, "missing"], "accepted", None) == 1
        db_session.refresh(a)
        db_session.refresh(b)
        assert a.status == "accepted"
        assert b.status == "accepted"


class TestDetectionUpdates:
    def test_update_detection_overwrites_values(self, db_session, store, service):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        before = to_utc(flag.last_detected_at)

        assert store.update_detection(flag.id, "x", "y") is True
        db_session.refresh(flag)
        assert (flag.manifest_value, flag.current_value) == ("x", "y")
        assert to_utc(flag.last_detected_at) >= before

    def test_update_last_detected_at_touches_timestamp_only(self, db_session, store, service):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        flag.last_detected_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
        db_session.flush()

        assert store.update_last_detected_at(flag.id) is True
        db_session.refresh(flag)
        assert to_utc(flag.last_detected_at).year > 2020
        assert flag.manifest_value == "a"

    def test_updates_on_missing_flag_return_false(self, store):
        assert store.update_detection("missing", "a", "b") is False
        assert store.update_last_detected_at("missing") is False


class TestUpsertFieldDrift:
    def test_created_then_updated(self, db_session, store, service):
        first = store.upsert_field_drift("svc-1", "name", '"New"', '"Old"', None)
        assert first.action == "created"
        assert first.flag.status == "pending"

        second = store.upsert_field_drift("svc-1", "name", '"New"', '"Old"', None)
        assert second.action == "updated"
        assert second.flag.id == first.flag.id
        assert second.flag.manifest_value == '"New"'
        assert _active_count(db_session, "svc-1", "name") == 1

    def test_repeat_upsert_bumps_last_detected_at(self, db_session, store, service):
        first = store.upsert_field_drift("svc-1", "name", "New", "Old")
        first.flag.last_detected_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
        db_session.flush()

        again = store.upsert_field_drift("svc-1", "name", "New", "Old")
        assert to_utc(again.flag.last_detected_at).year > 2020
        assert again.flag.status == "pending"

    def test_pending_flag_takes_new_values(self, store, service):
        store.upsert_field_drift("svc-1", "name", "New", "Old")
        result = store.upsert_field_drift("svc-1", "name", "Newer", "Local")

        assert result.action == "updated"
        assert result.flag.manifest_value == "Newer"
        assert result.flag.current_value == "Local"

    def test_dismissed_flag_stays_dismissed_for_same_value(self, db_session, store, service, user):
        created = store.upsert_field_drift("svc-1", "name", '"New"', '"Old"', None)
        store.resolve(created.flag.id, "dismissed", user.id)

        result = store.upsert_field_drift("svc-1", "name", '"New"', '"Old"', None)

        assert result.action == "unchanged"
        assert result.flag.status == "dismissed"
        assert result.flag.resolved_by == user.id

    def test_dismissed_flag_reopens_for_new_value(self, db_session, store, service, user):
        created = store.upsert_field_drift("svc-1", "name", '"New"', '"Old"', None)
        store.resolve(created.flag.id, "dismissed", user.id)

        result = store.upsert_field_drift("svc-1", "name", '"Newer"', '"Old"', None)

        assert result.action == "reopened"
        assert result.flag.id == created.flag.id
        assert result.flag.status == "pending"
        assert result.flag.resolved_at is None
        assert result.flag.resolved_by is None
        assert result.flag.manifest_value == '"Newer"'

    def test_terminal_flag_does_not_block_new_flag(self, db_session, store, service):
        created = store.upsert_field_drift("svc-1", "name", "New", "Old")
        store.resolve(created.flag.id, "accepted", None)

        result = store.upsert_field_drift("svc-1", "name", "New", "Old")

        assert result.action == "created"
        assert result.flag.id != created.flag.id
        assert _active_count(db_session, "svc-1", "name") == 1

    def test_flags_are_per_field(self, db_session, store, service):
        store.upsert_field_drift("svc-1", "name", "New", "Old")
        store.upsert_field_drift("svc-1", "description", "d1", "d2")

        assert _active_count(db_session, "svc-1") == 2

    def test_at_most_one_active_flag_across_many_upserts(self, db_session, store, service, user):
        values = ["a", "a", "b", "b", "c", "a"]
        for i, value in enumerate(values):
            result = store.upsert_field_drift("svc-1", "name", value, "local")
            if i % 2 == 0:
                store.resolve(result.flag.id, "dismissed", user.id)
            assert _active_count(db_session, "svc-1", "name") == 1

    def test_records_sync_history_id(self, store, service):
        result = store.upsert_field_drift("svc-1", "name", "New", "Old", "hist-1")
        assert result.flag.sync_history_id == "hist-1"

    def test_repeat_upsert_without_history_id_keeps_previous(self, store, service):
        store.upsert_field_drift("svc-1", "name", "New", "Old", "hist-1")
        pending = store.upsert_field_drift("svc-1", "name", "Newer", "Old")

        assert pending.action == "updated"
        assert pending.flag.sync_history_id == "hist-1"

    def test_unknown_service_raises(self, store, team):
        with pytest.raises(NotFoundError):
            store.upsert_field_drift("nope", "name", "a", "b")


class TestUpsertRemovalDrift:
    def test_created_then_unchanged(self, db_session, store, service):
        first = store.upsert_removal_drift("svc-1")
        second = store.upsert_removal_drift("svc-1")

        assert first.action == "created"
        assert second.action == "unchanged"
        assert second.flag.id == first.flag.id
        assert _active_count(db_session, "svc-1", drift_type="service_removal") == 1

    def test_dismissed_removal_is_never_reopened(self, store, service, user):
        first = store.upsert_removal_drift("svc-1")
        store.resolve(first.flag.id, "dismissed", user.id)

        again = store.upsert_removal_drift("svc-1")

        assert again.action == "unchanged"
        assert again.flag.status == "dismissed"

    def test_repeat_upsert_without_history_id_keeps_previous(self, store, service):
        store.upsert_removal_drift("svc-1", "hist-1")
        again = store.upsert_removal_drift("svc-1")

        assert again.action == "unchanged"
        assert again.flag.sync_history_id == "hist-1"

    def test_explicit_reopen_revives_removal_flag(self, db_session, store, service, user):
        first = store.upsert_removal_drift("svc-1")
        store.resolve(first.flag.id, "dismissed", user.id)

        assert store.reopen(first.flag.id) is True
        db_session.refresh(first.flag)
        assert first.flag.status == "pending"

    def test_unknown_service_raises(self, store, team):
        with pytest.raises(NotFoundError):
            store.upsert_removal_drift("nope")


class TestReads:
    def test_find_active_by_service_id(self, store, service):
        pending = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        dismissed = store.create(TEAM_ID, service.id, "field_change", "description", "a", "b")
        accepted = store.create(TEAM_ID, service.id, "service_removal")
        store.resolve(dismissed.id, "dismissed", None)
        store.resolve(accepted.id, "accepted", None)

        ids = {flag.id for flag in store.find_active_by_service_id(service.id)}
        assert ids == {pending.id, dismissed.id}

    def test_find_active_by_service_and_field(self, store, service):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")

        assert store.find_active_by_service_and_field(service.id, "name").id == flag.id
        assert store.find_active_by_service_and_field(service.id, "description") is None

    def test_find_active_removal(self, store, service):
        assert store.find_active_removal_by_service_id(service.id) is None
        flag = store.create(TEAM_ID, service.id, "service_removal")
        assert store.find_active_removal_by_service_id(service.id).id == flag.id

    def test_find_by_team_id_enriches_and_filters(self, db_session, store, service):
        reviewer = make_user(db_session, "user-9", name="Grace")
        other = make_service(db_session, TEAM_ID, service_id="svc-2", name="Billing")
        a = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        b = store.create(TEAM_ID, other.id, "service_removal")
        store.resolve(b.id, "dismissed", reviewer.id)
        a.last_detected_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        b.last_detected_at = datetime(2024, 1, 2, tzinfo=timezone.utc)
        db_session.flush()

        page = store.find_by_team_id(TEAM_ID)
        assert page.total == 2
        assert [item.flag.id for item in page.flags] == [b.id, a.id]
        assert page.flags[0].service_name == "Billing"
        assert page.flags[0].resolved_by_name == "Grace"
        assert page.flags[1].manifest_key == "checkout"
        assert page.flags[1].resolved_by_name is None

        assert store.find_by_team_id(TEAM_ID, status="dismissed").total == 1
        assert store.find_by_team_id(TEAM_ID, drift_type="field_change").total == 1
        assert store.find_by_team_id(TEAM_ID, service_id="svc-2").flags[0].flag.id == b.id

    def test_find_by_team_id_paginates(self, store, service):
        for i in range(5):
            store.create(TEAM_ID, service.id, "field_change", f"field-{i}", "a", "b")

        page = store.find_by_team_id(TEAM_ID, limit=2, offset=4)
        assert page.total == 5
        assert len(page.flags) == 1

    def test_find_by_team_id_clamps_limit(self, store, service):
        store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")

        assert len(store.find_by_team_id(TEAM_ID, limit=0).flags) == 1
        assert len(store.find_by_team_id(TEAM_ID, limit=10_000, offset=-3).flags) == 1
        assert MAX_LIST_LIMIT == 250

    def test_find_by_team_id_excludes_other_teams(self, db_session, store, service):
        make_team(db_session, "team-2")
        foreign = make_service(db_session, "team-2", service_id="svc-x")
        store.create("team-2", foreign.id, "service_removal")

        assert store.find_by_team_id(TEAM_ID).total == 0

    def test_count_by_team_id(self, store, service):
        store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        store.create(TEAM_ID, service.id, "service_removal")
        dismissed = store.create(TEAM_ID, service.id, "field_change", "description", "a", "b")
        store.resolve(dismissed.id, "dismissed", None)
        accepted = store.create(TEAM_ID, service.id, "field_change", "poll_interval_ms", "1", "2")
        store.resolve(accepted.id, "accepted", None)

        summary = store.count_by_team_id(TEAM_ID)
        assert summary.pending_count == 2
        assert summary.dismissed_count == 1
        assert summary.field_change_pending == 1
        assert summary.service_removal_pending == 1

    def test_count_for_team_without_flags(self, store, team):
        summary = store.count_by_team_id(TEAM_ID)
        assert summary.pending_count == 0
        assert summary.dismissed_count == 0


class TestBulkClose:
    def test_resolve_all_for_service(self, db_session, store, service):
        pending = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        dismissed = store.create(TEAM_ID, service.id, "service_removal")
        store.resolve(dismissed.id, "dismissed", None)

        assert store.resolve_all_for_service(service.id) == 2
        db_session.refresh(pending)
        db_session.refresh(dismissed)
        assert pending.status == "accepted"
        assert dismissed.status == "resolved"
        assert store.find_active_by_service_id(service.id) == []

    def test_resolve_all_for_team_leaves_other_teams(self, db_session, store, service):
        make_team(db_session, "team-2")
        foreign = make_service(db_session, "team-2", service_id="svc-x")
        store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        other = store.create("team-2", foreign.id, "service_removal")

        assert store.resolve_all_for_team(TEAM_ID) == 1
        db_session.refresh(other)
        assert other.status == "pending"


class TestDeleteOlderThan:
    def test_only_terminal_statuses_are_deleted(self, db_session, store, service):
        old = datetime.now(timezone.utc) - timedelta(days=200)
        flags = {}
        for status in ("pending", "dismissed", "accepted", "resolved"):
            flag = store.create(TEAM_ID, service.id, "field_change", f"f-{status}", "a", "b")
            flag.status = status
            flag.created_at = old
            flags[status] = flag.id
        recent = store.create(TEAM_ID, service.id, "field_change", "recent", "a", "b")
        recent.status = "accepted"
        db_session.flush()

        cutoff = (datetime.now(timezone.utc) - timedelta(days=90)).isoformat()
        deleted = store.delete_older_than(cutoff, ["accepted", "resolved"])

        assert deleted == 2
        remaining = {flag.id for flag in db_session.query(DriftFlag).all()}
        assert remaining == {flags["pending"], flags["dismissed"], recent.id}

    def test_without_statuses_deletes_everything_older(self, db_session, store, service):
        flag = store.create(TEAM_ID, service.id, "field_change", "name", "a", "b")
        flag.created_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
        db_session.flush()

        assert store.delete_older_than("2021-01-01T00:00:00Z") == 1

    def test_empty_statuses_deletes_regardless_of_status(self, db_session, store, service):
        for status in ("pending", "accepted"):
            flag = store.create(TEAM_ID, service.id, "field_change", f"f-{status}", "a", "b")
            flag.status = status
            flag.created_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
        db_session.flush()

        assert store.delete_older_than("2021-01-01T00:00:00Z", []) == 2
        assert db_session.query(DriftFlag).count() == 0
