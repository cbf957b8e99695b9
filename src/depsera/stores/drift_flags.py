"""Persistence and state transitions for drift flags.

Lifecycle::

    pending   --resolve(dismissed)--> dismissed
    pending   --resolve(accepted)-->  accepted   (terminal)
    dismissed --resolve(resolved)-->  resolved   (terminal)
    dismissed --reopen()-->           pending

At most one flag per (service, field) or (service, removal) is ever in an
active status (pending or dismissed). The sync engine keeps that true by
always going through :meth:`DriftFlagStore.upsert_field_drift` and
:meth:`DriftFlagStore.upsert_removal_drift` inside its run transaction.

Illegal transitions are reported through return values, never raised. All
methods flush but never commit; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Literal, Optional, Union

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from depsera.errors import NotFoundError
from depsera.models.manifest import (
    ACTIVE_FLAG_STATUSES,
    DriftFlag,
    DriftFlagStatus,
    DriftType,
)
from depsera.models.services import Service
from depsera.models.teams import User
from depsera.utils.datetime import parse_cutoff, utc_now
from depsera.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 250

UpsertAction = Literal["created", "updated", "unchanged", "reopened"]

# Each resolvable target status has exactly one legal source status.
_RESOLVE_SOURCE = {
    DriftFlagStatus.DISMISSED.value: DriftFlagStatus.PENDING.value,
    DriftFlagStatus.ACCEPTED.value: DriftFlagStatus.PENDING.value,
    DriftFlagStatus.RESOLVED.value: DriftFlagStatus.DISMISSED.value,
}

# How an active flag is closed when the system (not a reviewer) retires it.
_CLOSE_TARGET = {
    DriftFlagStatus.PENDING.value: DriftFlagStatus.ACCEPTED.value,
    DriftFlagStatus.DISMISSED.value: DriftFlagStatus.RESOLVED.value,
}


@dataclass
class DriftFlagWithContext:
    flag: DriftFlag
    service_name: str
    manifest_key: Optional[str]
    resolved_by_name: Optional[str]


@dataclass
class DriftFlagPage:
    flags: list[DriftFlagWithContext]
    total: int


@dataclass
class DriftSummary:
    pending_count: int = 0
    dismissed_count: int = 0
    field_change_pending: int = 0
    service_removal_pending: int = 0


@dataclass
class UpsertResult:
    flag: DriftFlag
    action: UpsertAction


def _value(member: Union[DriftFlagStatus, DriftType, str]) -> str:
    return str(getattr(member, "value", member))


class DriftFlagStore:
    def __init__(self, session: Session):
        self.session = session

    # -- reads --

    def find_by_id(self, flag_id: str) -> Optional[DriftFlag]:
        return self.session.get(DriftFlag, flag_id)

    def find_by_team_id(
        self,
        team_id: str,
        status: Optional[str] = None,
        drift_type: Optional[str] = None,
        service_id: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> DriftFlagPage:
        """List a team's flags, newest detection first.

        ``limit`` is clamped to 1..250 and ``offset`` to >= 0.
        """
        limit = min(max(limit, 1), MAX_LIST_LIMIT)
        offset = max(offset, 0)

        query = self.session.query(DriftFlag).filter(DriftFlag.team_id == team_id)
        if status:
            query = query.filter(DriftFlag.status == _value(status))
        if drift_type:
            query = query.filter(DriftFlag.drift_type == _value(drift_type))
        if service_id:
            query = query.filter(DriftFlag.service_id == service_id)

        total = query.count()
        rows = (
            query.join(Service, Service.id == DriftFlag.service_id)
            .outerjoin(User, User.id == DriftFlag.resolved_by)
            .with_entities(DriftFlag, Service.name, Service.manifest_key, User.name)
            .order_by(DriftFlag.last_detected_at.desc(), DriftFlag.id)
            .limit(limit)
            .offset(offset)
            .all()
        )
        return DriftFlagPage(
            flags=[
                DriftFlagWithContext(
                    flag=flag,
                    service_name=service_name,
                    manifest_key=manifest_key,
                    resolved_by_name=resolver_name,
                )
                for flag, service_name, manifest_key, resolver_name in rows
            ],
            total=total,
        )

    def find_active_by_service_id(self, service_id: str) -> list[DriftFlag]:
        return (
            self.session.query(DriftFlag)
            .filter(
                DriftFlag.service_id == service_id,
                DriftFlag.status.in_(ACTIVE_FLAG_STATUSES),
            )
            .order_by(DriftFlag.last_detected_at.desc())
            .all()
        )

    def find_active_by_service_and_field(
        self, service_id: str, field_name: str
    ) -> Optional[DriftFlag]:
        return (
            self.session.query(DriftFlag)
            .filter(
                DriftFlag.service_id == service_id,
                DriftFlag.drift_type == DriftType.FIELD_CHANGE.value,
                DriftFlag.field_name == field_name,
                DriftFlag.status.in_(ACTIVE_FLAG_STATUSES),
            )
            .first()
        )

    def find_active_removal_by_service_id(self, service_id: str) -> Optional[DriftFlag]:
        return (
            self.session.query(DriftFlag)
            .filter(
                DriftFlag.service_id == service_id,
                DriftFlag.drift_type == DriftType.SERVICE_REMOVAL.value,
                DriftFlag.status.in_(ACTIVE_FLAG_STATUSES),
            )
            .first()
        )

    def count_by_team_id(self, team_id: str) -> DriftSummary:
        pending = DriftFlag.status == DriftFlagStatus.PENDING.value

        def _count(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        row = (
            self.session.query(
                _count(pending),
                _count(DriftFlag.status == DriftFlagStatus.DISMISSED.value),
                _count(pending & (DriftFlag.drift_type == DriftType.FIELD_CHANGE.value)),
                _count(pending & (DriftFlag.drift_type == DriftType.SERVICE_REMOVAL.value)),
            )
            .filter(DriftFlag.team_id == team_id)
            .one()
        )
        return DriftSummary(
            pending_count=int(row[0]),
            dismissed_count=int(row[1]),
            field_change_pending=int(row[2]),
            service_removal_pending=int(row[3]),
        )

    # -- writes --

    def create(
        self,
        team_id: str,
        service_id: str,
        drift_type: Union[DriftType, str],
        field_name: Optional[str] = None,
        manifest_value: Optional[str] = None,
        current_value: Optional[str] = None,
        sync_history_id: Optional[str] = None,
    ) -> DriftFlag:
        now = utc_now()
        flag = DriftFlag(
            team_id=team_id,
            service_id=service_id,
            drift_type=_value(drift_type),
            field_name=field_name,
            manifest_value=manifest_value,
            current_value=current_value,
            status=DriftFlagStatus.PENDING.value,
            first_detected_at=now,
            last_detected_at=now,
            resolved_at=None,
            resolved_by=None,
            sync_history_id=sync_history_id,
        )
        self.session.add(flag)
        self.session.flush()
        return flag

    def resolve(
        self,
        flag_id: str,
        status: Union[DriftFlagStatus, str],
        resolved_by: Optional[str],
    ) -> bool:
        """Move a flag to ``status`` if the transition is legal.

        Returns False, changing nothing, when the flag is missing or the
        transition is not allowed from its current status.
        """
        target = _value(status)
        source = _RESOLVE_SOURCE.get(target)
        if source is None:
            return False
        updated = (
            self.session.query(DriftFlag)
            .filter(DriftFlag.id == flag_id, DriftFlag.status == source)
            .update(
                {
                    DriftFlag.status: target,
                    DriftFlag.resolved_at: utc_now(),
                    DriftFlag.resolved_by: resolved_by,
                }
            )
        )
        return updated == 1

    def reopen(self, flag_id: str) -> bool:
        updated = (
            self.session.query(DriftFlag)
            .filter(
                DriftFlag.id == flag_id,
                DriftFlag.status == DriftFlagStatus.DISMISSED.value,
            )
            .update(
                {
                    DriftFlag.status: DriftFlagStatus.PENDING.value,
                    DriftFlag.resolved_at: None,
                    DriftFlag.resolved_by: None,
                }
            )
        )
        return updated == 1

    def update_detection(
        self, flag_id: str, manifest_value: Optional[str], current_value: Optional[str]
    ) -> bool:
        updated = (
            self.session.query(DriftFlag)
            .filter(DriftFlag.id == flag_id)
            .update(
                {
                    DriftFlag.manifest_value: manifest_value,
                    DriftFlag.current_value: current_value,
                    DriftFlag.last_detected_at: utc_now(),
                }
            )
        )
        return updated == 1

    def update_last_detected_at(self, flag_id: str) -> bool:
        updated = (
            self.session.query(DriftFlag)
            .filter(DriftFlag.id == flag_id)
            .update({DriftFlag.last_detected_at: utc_now()})
        )
        return updated == 1

    def bulk_resolve(
        self,
        flag_ids: Iterable[str],
        status: Union[DriftFlagStatus, str],
        resolved_by: Optional[str],
    ) -> int:
        """Resolve each id independently; illegal or unknown ids are skipped."""
        return sum(1 for flag_id in flag_ids if self.resolve(flag_id, status, resolved_by))

    def close(self, flag: DriftFlag) -> bool:
        """System close of an active flag: pending -> accepted, dismissed -> resolved."""
        target = _CLOSE_TARGET.get(flag.status)
        if target is None:
            return False
        return self.resolve(flag.id, target, None)

    def resolve_all_for_service(self, service_id: str) -> int:
        return self._close_active(DriftFlag.service_id == service_id)

    def resolve_all_for_team(self, team_id: str) -> int:
        return self._close_active(DriftFlag.team_id == team_id)

    def _close_active(self, scope) -> int:
        now = utc_now()
        total = 0
        for source, target in _CLOSE_TARGET.items():
            total += (
                self.session.query(DriftFlag)
                .filter(scope, DriftFlag.status == source)
                .update(
                    {
                        DriftFlag.status: target,
                        DriftFlag.resolved_at: now,
                        DriftFlag.resolved_by: None,
                    }
                )
            )
        return total

    # -- sync engine upserts --

    def _require_service(self, service_id: str) -> Service:
        service = self.session.get(Service, service_id)
        if service is None:
            raise NotFoundError("Service", service_id)
        return service

    def upsert_field_drift(
        self,
        service_id: str,
        field_name: str,
        manifest_value: Optional[str],
        current_value: Optional[str],
        sync_history_id: Optional[str] = None,
    ) -> UpsertResult:
        """Record field drift detected by a sync run.

        - no active flag: create a pending one (``created``)
        - pending flag: refresh both values (``updated``)
        - dismissed flag, same manifest value: touch only (``unchanged``)
        - dismissed flag, new manifest value: back to pending (``reopened``)

        Raises:
            NotFoundError: if ``service_id`` does not exist.
        """
        existing = self.find_active_by_service_and_field(service_id, field_name)
        if existing is None:
            service = self._require_service(service_id)
            flag = self.create(
                team_id=service.team_id,
                service_id=service_id,
                drift_type=DriftType.FIELD_CHANGE,
                field_name=field_name,
                manifest_value=manifest_value,
                current_value=current_value,
                sync_history_id=sync_history_id,
            )
            return UpsertResult(flag=flag, action="created")

        now = utc_now()
        if existing.status == DriftFlagStatus.PENDING.value:
            existing.manifest_value = manifest_value
            existing.current_value = current_value
            existing.last_detected_at = now
            if sync_history_id:
                existing.sync_history_id = sync_history_id
            self.session.flush()
            return UpsertResult(flag=existing, action="updated")

        if existing.manifest_value == manifest_value:
            existing.last_detected_at = now
            if sync_history_id:
                existing.sync_history_id = sync_history_id
            self.session.flush()
            return UpsertResult(flag=existing, action="unchanged")

        existing.status = DriftFlagStatus.PENDING.value
        existing.manifest_value = manifest_value
        existing.current_value = current_value
        existing.resolved_at = None
        existing.resolved_by = None
        existing.last_detected_at = now
        if sync_history_id:
            existing.sync_history_id = sync_history_id
        self.session.flush()
        logger.info(
            "Reopened dismissed drift flag %s for field %s",
            existing.id,
            sanitize_for_log(field_name),
        )
        return UpsertResult(flag=existing, action="reopened")

    def upsert_removal_drift(
        self, service_id: str, sync_history_id: Optional[str] = None
    ) -> UpsertResult:
        """Record that a manifest-managed service vanished from its manifest.

        A dismissed removal flag is only touched, never reopened: there is no
        value to compare against.

        Raises:
            NotFoundError: if ``service_id`` does not exist.
        """
        existing = self.find_active_removal_by_service_id(service_id)
        if existing is None:
            service = self._require_service(service_id)
            flag = self.create(
                team_id=service.team_id,
                service_id=service_id,
                drift_type=DriftType.SERVICE_REMOVAL,
                sync_history_id=sync_history_id,
            )
            return UpsertResult(flag=flag, action="created")

        existing.last_detected_at = utc_now()
        if sync_history_id:
            existing.sync_history_id = sync_history_id
        self.session.flush()
        return UpsertResult(flag=existing, action="unchanged")

    def delete_older_than(
        self,
        cutoff: Union[str, datetime],
        statuses: Optional[Iterable[Union[DriftFlagStatus, str]]] = None,
    ) -> int:
        """Delete flags created before ``cutoff``.

        A non-empty ``statuses`` restricts the delete to flags in those
        statuses; ``None`` or an empty collection deletes regardless of status.
        """
        query = self.session.query(DriftFlag).filter(
            DriftFlag.created_at < parse_cutoff(cutoff)
        )
        wanted = [_value(s) for s in statuses or ()]
        if wanted:
            query = query.filter(DriftFlag.status.in_(wanted))
        return query.delete(synchronize_session=False)
