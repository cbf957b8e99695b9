"""Maps a detected difference and the team's sync policy to an action."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from depsera.manifest.differ import DiffKind
from depsera.manifest.types import SyncPolicy


class SyncAction(str, Enum):
    FLAG_FOR_REVIEW = "flag_for_review"
    AUTO_APPLY = "auto_apply"
    IGNORE = "ignore"


class ServiceEffect(str, Enum):
    APPLY_MANIFEST_VALUE = "apply_manifest_value"
    DEACTIVATE = "deactivate"
    DELETE = "delete"


@dataclass(frozen=True)
class PolicyDecision:
    kind: DiffKind
    action: SyncAction
    effect: Optional[ServiceEffect] = None


_FIELD_DRIFT = {
    "flag": PolicyDecision(DiffKind.DRIFT_CANDIDATE, SyncAction.FLAG_FOR_REVIEW),
    "manifest_wins": PolicyDecision(
        DiffKind.DRIFT_CANDIDATE, SyncAction.AUTO_APPLY, ServiceEffect.APPLY_MANIFEST_VALUE
    ),
    "local_wins": PolicyDecision(DiffKind.DRIFT_CANDIDATE, SyncAction.IGNORE),
}

_REMOVAL = {
    "flag": PolicyDecision(DiffKind.REMOVAL_CANDIDATE, SyncAction.FLAG_FOR_REVIEW),
    "deactivate": PolicyDecision(
        DiffKind.REMOVAL_CANDIDATE, SyncAction.AUTO_APPLY, ServiceEffect.DEACTIVATE
    ),
    "delete": PolicyDecision(
        DiffKind.REMOVAL_CANDIDATE, SyncAction.AUTO_APPLY, ServiceEffect.DELETE
    ),
}


def decide(kind: DiffKind, policy: SyncPolicy) -> PolicyDecision:
    """Return what the orchestrator should do for a difference of ``kind``.

    Creations and safe updates are always applied; unchanged services are
    ignored. Only drift and removal candidates consult the policy.
    """
    if kind is DiffKind.DRIFT_CANDIDATE:
        return _FIELD_DRIFT[policy.on_field_drift]
    if kind is DiffKind.REMOVAL_CANDIDATE:
        return _REMOVAL[policy.on_removal]
    if kind is DiffKind.UNCHANGED:
        return PolicyDecision(kind, SyncAction.IGNORE)
    return PolicyDecision(kind, SyncAction.AUTO_APPLY, ServiceEffect.APPLY_MANIFEST_VALUE)
