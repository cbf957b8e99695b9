from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from depsera.manifest.types import (
    ParsedManifest,
    SyncPolicy,
    SyncResult,
    SyncSummary,
    decode_string_list,
    loads_or_none,
)

from factories import manifest_doc, service_entry


class TestSyncPolicy:
    def test_defaults(self):
        policy = SyncPolicy()

        assert policy.on_field_drift == "flag"
        assert policy.on_removal == "flag"
        assert policy.on_alias_removal == "keep"
        assert policy.on_override_removal == "keep"
        assert policy.on_association_removal == "keep"

    def test_round_trips_through_json(self):
        policy = SyncPolicy(on_removal="delete", on_alias_removal="remove")

        assert SyncPolicy.from_json(policy.to_json()) == policy

    def test_merged_rejects_bad_value(self):
        with pytest.raises(ValidationError):
            SyncPolicy().merged({"on_removal": "archive"})

    def test_merged_leaves_original_untouched(self):
        base = SyncPolicy()

        merged = base.merged({"on_field_drift": "local_wins"})

        assert merged.on_field_drift == "local_wins"
        assert base.on_field_drift == "flag"


class TestSyncSummary:
    def test_from_json_tolerates_garbage(self):
        assert SyncSummary.from_json(None) is None
        assert SyncSummary.from_json("[]") is None
        assert SyncSummary.from_json('{"services": {"created": "many"}}') is None

    def test_missing_sections_default_to_zero(self):
        summary = SyncSummary.from_json('{"services": {"created": 4}}')

        assert summary.services.created == 4
        assert summary.aliases.created == 0
        assert summary.associations.removed == 0

    def test_failed_result(self):
        result = SyncResult.failed("boom", duration_ms=7, warnings=["w"])

        assert result.status == "failed"
        assert result.errors == ["boom"]
        assert result.warnings == ["w"]
        assert result.summary == SyncSummary()


class TestParsedManifest:
    def test_tracks_provided_fields(self):
        doc = manifest_doc(
            service_entry("checkout", description=None, poll_interval_ms=30000),
            service_entry("cart", metrics_endpoint="https://cart.example.com/metrics"),
        )

        parsed = ParsedManifest.from_document(doc)

        checkout, cart = parsed.services
        assert checkout.provided_fields() == [
            "name",
            "health_endpoint",
            "description",
            "poll_interval_ms",
        ]
        assert checkout.synced_values()["description"] is None
        assert cart.provided_fields() == ["name", "health_endpoint", "metrics_endpoint"]

    def test_null_for_non_clearable_field_is_dropped(self):
        doc = manifest_doc(service_entry("checkout", poll_interval_ms=None))

        entry = ParsedManifest.from_document(doc).services[0]

        assert "poll_interval_ms" not in entry.provided_fields()

    def test_unknown_keys_are_ignored(self):
        doc = manifest_doc(service_entry("checkout", owner="someone"))

        entry = ParsedManifest.from_document(doc).services[0]

        assert entry.key == "checkout"
        assert not hasattr(entry, "owner")

    def test_optional_sections(self):
        doc = manifest_doc(
            aliases=[{"alias": "pg", "canonical_name": "postgres"}],
            canonical_overrides=[{"canonical_name": "postgres", "impact": "high"}],
            associations=[
                {
                    "service_key": "checkout",
                    "dependency_name": "pg",
                    "linked_service_key": "team/db",
                    "association_type": "database",
                }
            ],
        )

        parsed = ParsedManifest.from_document(doc)

        assert parsed.aliases[0].canonical_name == "postgres"
        assert parsed.canonical_overrides[0].contact is None
        assert parsed.associations[0].linked_service_key == "team/db"


class TestJsonHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (None, []),
            ("", []),
            ("nope", []),
            ('{"a": 1}', []),
            (json.dumps(["a", 2]), ["a", "2"]),
        ],
    )
    def test_decode_string_list(self, raw, expected):
        assert decode_string_list(raw) == expected

    def test_loads_or_none(self):
        assert loads_or_none('{"x": 1}') == {"x": 1}
        assert loads_or_none("{") is None
