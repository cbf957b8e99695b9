from __future__ import annotations

import pytest

from depsera.manifest.differ import DiffKind
from depsera.manifest.policy import ServiceEffect, SyncAction, decide
from depsera.manifest.types import SyncPolicy


class TestFieldDriftPolicy:
    @pytest.mark.parametrize(
        "setting,action,effect",
        [
            ("flag", SyncAction.FLAG_FOR_REVIEW, None),
            ("manifest_wins", SyncAction.AUTO_APPLY, ServiceEffect.APPLY_MANIFEST_VALUE),
            ("local_wins", SyncAction.IGNORE, None),
        ],
    )
    def test_decision(self, setting, action, effect):
        decision = decide(DiffKind.DRIFT_CANDIDATE, SyncPolicy(on_field_drift=setting))
        assert decision.action is action
        assert decision.effect is effect

    def test_removal_setting_does_not_affect_field_drift(self):
        decision = decide(
            DiffKind.DRIFT_CANDIDATE, SyncPolicy(on_field_drift="flag", on_removal="delete")
        )
        assert decision.action is SyncAction.FLAG_FOR_REVIEW


class TestRemovalPolicy:
    @pytest.mark.parametrize(
        "setting,action,effect",
        [
            ("flag", SyncAction.FLAG_FOR_REVIEW, None),
            ("deactivate", SyncAction.AUTO_APPLY, ServiceEffect.DEACTIVATE),
            ("delete", SyncAction.AUTO_APPLY, ServiceEffect.DELETE),
        ],
    )
    def test_decision(self, setting, action, effect):
        decision = decide(DiffKind.REMOVAL_CANDIDATE, SyncPolicy(on_removal=setting))
        assert decision.kind is DiffKind.REMOVAL_CANDIDATE
        assert decision.action is action
        assert decision.effect is effect


class TestPolicyFreeKinds:
    @pytest.mark.parametrize("kind", [DiffKind.CREATED, DiffKind.UPDATED])
    def test_creations_and_safe_updates_always_apply(self, kind):
        for setting in ("flag", "manifest_wins", "local_wins"):
            decision = decide(kind, SyncPolicy(on_field_drift=setting))
            assert decision.action is SyncAction.AUTO_APPLY
            assert decision.effect is ServiceEffect.APPLY_MANIFEST_VALUE

    def test_unchanged_is_ignored(self):
        assert decide(DiffKind.UNCHANGED, SyncPolicy()).action is SyncAction.IGNORE
