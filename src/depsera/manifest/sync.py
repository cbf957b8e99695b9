"""Manifest sync orchestration.

One run: fetch -> validate -> diff -> apply policy -> record. The apply phase
runs inside a SAVEPOINT on the caller's session, with a nested SAVEPOINT per
service so one bad entry only costs that entry. The caller commits (see
``depsera.db.session_scope``); nothing here calls ``commit()``.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from itertools import groupby
from operator import attrgetter
from typing import Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from depsera.config import load_settings
from depsera.errors import FetchFailure, NotFoundError, PartialEntryFailure
from depsera.manifest.differ import (
    DiffKind,
    DiffRecord,
    diff_manifest,
    parse_synced_values,
)
from depsera.manifest.endpoints import private_endpoint_keys
from depsera.manifest.fetcher import ManifestFetcher
from depsera.manifest.metadata import (
    sync_aliases,
    sync_associations,
    sync_canonical_overrides,
)
from depsera.manifest.policy import ServiceEffect, SyncAction, decide
from depsera.manifest.types import (
    ParsedManifest,
    SyncChange,
    SyncPolicy,
    SyncResult,
    SyncSummary,
    ValidationIssue,
    ValidationResult,
)
from depsera.manifest.validator import validate_manifest
from depsera.models.base import new_id
from depsera.models.manifest import (
    DriftType,
    SyncStatus,
    TeamManifestConfig,
    TriggerType,
)
from depsera.models.services import Service
from depsera.stores.drift_flags import DriftFlagStore
from depsera.stores.manifest_config import ManifestConfigStore, config_policy
from depsera.stores.services import ServiceStore
from depsera.stores.sync_history import SyncHistoryRecorder
from depsera.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

STALE_LOCK_TIMEOUT_SECONDS = 5 * 60
UNEXPECTED_ERROR_MESSAGE = (
    "Manifest sync failed due to an unexpected error; no changes were applied"
)


class SyncGate:
    """Per-team single-flight lock and manual-trigger cooldown.

    Process-local: it serializes runs inside one worker process. Runs that
    overlap across processes are still safe because drift flag upserts are
    idempotent.
    """

    def __init__(
        self,
        cooldown_seconds: Optional[float] = None,
        stale_after_seconds: float = STALE_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if cooldown_seconds is None:
            cooldown_seconds = load_settings().manual_cooldown_seconds
        self.cooldown_seconds = cooldown_seconds
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._mutex = threading.Lock()
        self._locks: dict[str, float] = {}
        self._last_manual: dict[str, float] = {}

    def retry_after(self, team_id: str) -> float:
        """Seconds until a manual sync is allowed again (0 when allowed now)."""
        with self._mutex:
            last = self._last_manual.get(team_id)
            if last is None:
                return 0.0
            remaining = self.cooldown_seconds - (self._clock() - last)
            return max(remaining, 0.0)

    def is_syncing(self, team_id: str) -> bool:
        with self._mutex:
            return self._held(team_id)

    def _held(self, team_id: str) -> bool:
        acquired_at = self._locks.get(team_id)
        if acquired_at is None:
            return False
        if self._clock() - acquired_at > self.stale_after_seconds:
            logger.warning("Dropping stale manifest sync lock for team %s", sanitize_for_log(team_id))
            del self._locks[team_id]
            return False
        return True

    def acquire(self, team_id: str, manual: bool = False) -> bool:
        with self._mutex:
            if self._held(team_id):
                return False
            now = self._clock()
            self._locks[team_id] = now
            if manual:
                self._last_manual[team_id] = now
            return True

    def release(self, team_id: str) -> None:
        with self._mutex:
            self._locks.pop(team_id, None)

    def reset(self) -> None:
        with self._mutex:
            self._locks.clear()
            self._last_manual.clear()


_default_gate: Optional[SyncGate] = None


def get_sync_gate() -> SyncGate:
    global _default_gate
    if _default_gate is None:
        _default_gate = SyncGate()
    return _default_gate


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _merge_summary(target: SyncSummary, delta: SyncSummary) -> None:
    for section in ("services", "aliases", "overrides", "associations"):
        into = getattr(target, section)
        for name, value in getattr(delta, section).model_dump().items():
            setattr(into, name, getattr(into, name) + value)


class ManifestSyncOrchestrator:
    def __init__(
        self,
        session: Session,
        fetcher: Optional[ManifestFetcher] = None,
        gate: Optional[SyncGate] = None,
    ):
        self.session = session
        self.fetcher = fetcher or ManifestFetcher()
        self.gate = gate or get_sync_gate()
        self.configs = ManifestConfigStore(session)
        self.services = ServiceStore(session)
        self.flags = DriftFlagStore(session)
        self.history = SyncHistoryRecorder(session)

    def test_manifest(self, url: str) -> ValidationResult:
        """Fetch and validate ``url`` without writing anything."""
        try:
            fetched = self.fetcher.fetch(url)
        except FetchFailure as exc:
            return ValidationResult(
                valid=False,
                errors=[ValidationIssue(severity="error", path="", message=str(exc))],
            )
        return validate_manifest(fetched.data)

    def sync_team(
        self,
        team_id: str,
        trigger_type: Union[TriggerType, str] = TriggerType.MANUAL,
        triggered_by: Optional[str] = None,
    ) -> SyncResult:
        """Run one sync for ``team_id`` and return its result.

        Rejections before the run starts (no config, disabled, cooldown, run
        already in progress) return a ``failed`` result without a history row.
        Every run that starts writes exactly one history row.
        """
        started = time.monotonic()
        trigger = TriggerType(trigger_type)
        manual = trigger is TriggerType.MANUAL

        config = self.configs.find_by_team_id(team_id)
        if config is None:
            return SyncResult.failed("Manifest config not found", _elapsed_ms(started))
        if not config.is_enabled:
            return SyncResult.failed(
                "Manifest sync is disabled for this team", _elapsed_ms(started)
            )

        if manual:
            wait = self.gate.retry_after(team_id)
            if wait > 0:
                return SyncResult.failed(
                    f"Manual sync cooldown active; retry in {math.ceil(wait)}s",
                    _elapsed_ms(started),
                )
        if not self.gate.acquire(team_id, manual=manual):
            return SyncResult.failed(
                "Sync already in progress for this team", _elapsed_ms(started)
            )

        logger.info(
            "Starting %s manifest sync for team %s", trigger.value, sanitize_for_log(team_id)
        )
        try:
            history_id = new_id()
            result = self._run(config, history_id, started, triggered_by)
            self._record(config, result, trigger, triggered_by, history_id)
        finally:
            self.gate.release(team_id)

        services = result.summary.services
        logger.info(
            "Manifest sync for team %s finished: status=%s created=%d updated=%d "
            "deactivated=%d deleted=%d drift_flagged=%d unchanged=%d (%dms)",
            sanitize_for_log(team_id),
            result.status,
            services.created,
            services.updated,
            services.deactivated,
            services.deleted,
            services.drift_flagged,
            services.unchanged,
            result.duration_ms,
        )
        return result

    def _run(
        self,
        config: TeamManifestConfig,
        history_id: str,
        started: float,
        triggered_by: Optional[str],
    ) -> SyncResult:
        try:
            fetched = self.fetcher.fetch(config.manifest_url)
        except FetchFailure as exc:
            logger.warning(
                "Manifest fetch failed for team %s: %s",
                sanitize_for_log(config.team_id),
                sanitize_for_log(str(exc)),
            )
            return SyncResult.failed(str(exc), _elapsed_ms(started))

        validation = validate_manifest(fetched.data)
        warnings = [str(issue) for issue in validation.warnings]
        if not validation.valid:
            return SyncResult(
                status=SyncStatus.FAILED.value,
                errors=[str(issue) for issue in validation.errors],
                warnings=warnings,
                duration_ms=_elapsed_ms(started),
            )

        manifest = ParsedManifest.from_document(fetched.data)
        policy = config_policy(config)
        summary = SyncSummary()
        changes: list[SyncChange] = []
        errors: list[str] = []

        private_keys = private_endpoint_keys(manifest.services)
        for key in private_keys:
            warnings.append(f'Service "{key}": health_endpoint targets a private address')

        try:
            with self.session.begin_nested():
                self._apply_services(
                    config.team_id, manifest, policy, history_id, summary, changes, errors,
                    frozenset(private_keys),
                )
                sync_aliases(self.session, config.team_id, manifest, policy, summary, errors)
                sync_canonical_overrides(
                    self.session, config.team_id, manifest, policy, summary, triggered_by, errors
                )
                sync_associations(
                    self.session, config.team_id, manifest, policy, summary, errors
                )
        except Exception:
            logger.exception(
                "Manifest sync apply phase failed for team %s",
                sanitize_for_log(config.team_id),
            )
            return SyncResult.failed(
                UNEXPECTED_ERROR_MESSAGE, _elapsed_ms(started), warnings=warnings
            )

        return SyncResult(
            status=SyncStatus.PARTIAL.value if errors else SyncStatus.SUCCESS.value,
            summary=summary,
            errors=errors,
            warnings=warnings,
            changes=changes,
            duration_ms=_elapsed_ms(started),
        )

    def _record(
        self,
        config: TeamManifestConfig,
        result: SyncResult,
        trigger: TriggerType,
        triggered_by: Optional[str],
        history_id: str,
    ) -> None:
        error = "; ".join(result.errors) if result.status == SyncStatus.FAILED.value else None
        self.configs.update_sync_result(config.team_id, result.status, error, result.summary)
        self.history.record(
            team_id=config.team_id,
            trigger_type=trigger,
            triggered_by=triggered_by,
            manifest_url=config.manifest_url,
            result=result,
            history_id=history_id,
        )

    # -- service entries --

    def _apply_services(
        self,
        team_id: str,
        manifest: ParsedManifest,
        policy: SyncPolicy,
        history_id: str,
        summary: SyncSummary,
        changes: list[SyncChange],
        errors: list[str],
        blocked: frozenset[str] = frozenset(),
    ) -> None:
        services = self.services.find_by_team_id(team_id)
        by_id = {service.id: service for service in services}
        records = diff_manifest(manifest.services, services)

        for manifest_key, group in groupby(records, key=attrgetter("manifest_key")):
            group = list(group)
            delta = SyncSummary()
            group_changes: list[SyncChange] = []
            try:
                with self.session.begin_nested():
                    self._apply_group(
                        team_id, group, by_id, policy, history_id, delta, group_changes, blocked
                    )
            except PartialEntryFailure as exc:
                errors.append(str(exc))
                continue
            except (SQLAlchemyError, NotFoundError) as exc:
                detail = getattr(exc, "orig", None) or exc
                failure = PartialEntryFailure(
                    manifest_key, f"could not be applied: {sanitize_for_log(str(detail))}"
                )
                logger.warning("%s", failure)
                errors.append(str(failure))
                continue
            _merge_summary(summary, delta)
            changes.extend(group_changes)

        if summary.services.drift_flagged:
            logger.info(
                "Drift detected for team %s: %d services flagged",
                sanitize_for_log(team_id),
                summary.services.drift_flagged,
            )

    def _apply_group(
        self,
        team_id: str,
        group: list[DiffRecord],
        by_id: dict[str, Service],
        policy: SyncPolicy,
        history_id: str,
        delta: SyncSummary,
        changes: list[SyncChange],
        blocked: frozenset[str] = frozenset(),
    ) -> None:
        head = group[0]
        if head.kind is DiffKind.CREATED:
            if head.manifest_key in blocked:
                logger.info(
                    "Not creating service %s: health endpoint targets a private address",
                    sanitize_for_log(head.manifest_key),
                )
                return
            self.services.create_from_manifest(team_id, head.entry)
            delta.services.created += 1
            changes.append(
                SyncChange(manifest_key=head.manifest_key, service_name=head.entry.name, action="created")
            )
            return

        service = by_id.get(head.service_id)
        if service is None:
            raise PartialEntryFailure(head.manifest_key, "matched service no longer exists")

        if head.kind is DiffKind.REMOVAL_CANDIDATE:
            self._apply_removal(service, head, policy, history_id, delta, changes)
            return

        self._apply_matched(service, group, policy, history_id, delta, changes)

    def _apply_matched(
        self,
        service: Service,
        group: list[DiffRecord],
        policy: SyncPolicy,
        history_id: str,
        delta: SyncSummary,
        changes: list[SyncChange],
    ) -> None:
        entry = group[0].entry
        applied: list[str] = []
        flagged: list[str] = []
        # Fields still diverging keep their flags open, whatever the policy did.
        diverging: set[str] = set()

        for record in group:
            if record.kind is DiffKind.UPDATED:
                applied.extend(record.fields_changed)
            elif record.kind is DiffKind.DRIFT_CANDIDATE:
                decision = decide(record.kind, policy)
                if decision.effect is not ServiceEffect.APPLY_MANIFEST_VALUE:
                    diverging.add(record.field_name)
                if decision.action is SyncAction.FLAG_FOR_REVIEW:
                    self.flags.upsert_field_drift(
                        service.id,
                        record.field_name,
                        record.manifest_value,
                        record.current_value,
                        history_id,
                    )
                    flagged.append(record.field_name)
                elif decision.effect is ServiceEffect.APPLY_MANIFEST_VALUE:
                    applied.append(record.field_name)

        first_sync = parse_synced_values(service.manifest_last_synced_values) is None
        if applied or not service.manifest_managed:
            self.services.apply_manifest_fields(service, entry, applied)
        if applied or first_sync:
            self.services.set_synced_values(service, entry)

        # Flags for fields that converged or were overwritten are closed.
        for flag in self.flags.find_active_by_service_id(service.id):
            if flag.drift_type == DriftType.SERVICE_REMOVAL.value or flag.field_name not in diverging:
                self.flags.close(flag)

        if applied:
            delta.services.updated += 1
            changes.append(
                SyncChange(
                    manifest_key=entry.key,
                    service_name=entry.name,
                    action="updated",
                    fields_changed=applied,
                )
            )
        if flagged:
            delta.services.drift_flagged += 1
            changes.append(
                SyncChange(
                    manifest_key=entry.key,
                    service_name=service.name,
                    action="drift_flagged",
                    drift_fields=flagged,
                )
            )
        if not applied and not flagged:
            delta.services.unchanged += 1
            changes.append(
                SyncChange(manifest_key=entry.key, service_name=service.name, action="unchanged")
            )

    def _apply_removal(
        self,
        service: Service,
        record: DiffRecord,
        policy: SyncPolicy,
        history_id: str,
        delta: SyncSummary,
        changes: list[SyncChange],
    ) -> None:
        decision = decide(record.kind, policy)
        name = service.name

        if decision.action is SyncAction.FLAG_FOR_REVIEW:
            self.flags.upsert_removal_drift(service.id, history_id)
            delta.services.drift_flagged += 1
            action = "drift_flagged"
        elif decision.effect is ServiceEffect.DEACTIVATE:
            self.flags.resolve_all_for_service(service.id)
            if self.services.deactivate(service):
                delta.services.deactivated += 1
                action = "deactivated"
            else:
                delta.services.unchanged += 1
                action = "unchanged"
        elif decision.effect is ServiceEffect.DELETE:
            self.services.delete(service)
            delta.services.deleted += 1
            action = "deleted"
        else:
            delta.services.unchanged += 1
            action = "unchanged"

        changes.append(
            SyncChange(manifest_key=record.manifest_key, service_name=name, action=action)
        )
