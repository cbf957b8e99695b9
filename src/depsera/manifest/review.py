"""Reviewer actions on drift flags: accept, dismiss, reopen and their bulk forms."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from depsera.errors import (
    ManifestSyncError,
    NotFoundError,
    ReviewConflictError,
    ValidationFailure,
)
from depsera.manifest.types import SYNCABLE_FIELDS
from depsera.manifest.validator import (
    MAX_POLL_INTERVAL_MS,
    MIN_POLL_INTERVAL_MS,
    is_valid_url,
)
from depsera.models.manifest import (
    TERMINAL_FLAG_STATUSES,
    DriftFlag,
    DriftFlagStatus,
    DriftType,
)
from depsera.stores.drift_flags import DriftFlagStore
from depsera.stores.services import ServiceStore
from depsera.utils.datetime import utc_now
from depsera.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

MAX_BULK_FLAGS = 100
URL_FIELDS = frozenset({"health_endpoint", "metrics_endpoint"})
REQUIRED_FIELDS = frozenset({"name", "health_endpoint"})


@dataclass
class BulkActionError:
    flag_id: str
    error: str


@dataclass
class BulkActionResult:
    succeeded: int = 0
    failed: int = 0
    errors: list[BulkActionError] = field(default_factory=list)


def _invalid(field_name: str, message: str) -> ValidationFailure:
    return ValidationFailure([f"{field_name}: {message}"], message)


def coerce_field_value(field_name: str, manifest_value: Optional[str]) -> Any:
    """Turn a flag's stored manifest value back into a service column value.

    Flags store values in normalized string form, where an empty string
    stands for null.

    Raises:
        ValidationFailure: if the value is not acceptable for ``field_name``.
    """
    if manifest_value is None or manifest_value == "":
        if field_name in REQUIRED_FIELDS:
            raise _invalid(field_name, f"{field_name} must be a non-empty string")
        if field_name == "poll_interval_ms":
            raise _invalid(field_name, "poll_interval_ms must be an integer")
        return None

    if field_name == "poll_interval_ms":
        try:
            interval = int(manifest_value)
        except ValueError:
            raise _invalid(field_name, "poll_interval_ms must be an integer") from None
        if not MIN_POLL_INTERVAL_MS <= interval <= MAX_POLL_INTERVAL_MS:
            raise _invalid(
                field_name,
                f"poll_interval_ms must be between {MIN_POLL_INTERVAL_MS} "
                f"and {MAX_POLL_INTERVAL_MS}",
            )
        return interval

    if field_name == "schema_config":
        try:
            json.loads(manifest_value)
        except ValueError:
            raise _invalid(field_name, "schema_config must be valid JSON") from None
        return manifest_value

    if field_name in URL_FIELDS and not is_valid_url(manifest_value):
        raise _invalid(field_name, f"{field_name} must be a valid URL")

    return manifest_value


class DriftReviewService:
    """Applies reviewer decisions. Methods flush; the caller commits."""

    def __init__(self, session: Session):
        self.session = session
        self.flags = DriftFlagStore(session)
        self.services = ServiceStore(session)

    def _load(self, team_id: str, flag_id: str) -> DriftFlag:
        flag = self.flags.find_by_id(flag_id)
        if flag is None or flag.team_id != team_id:
            raise NotFoundError("DriftFlag", flag_id)
        return flag

    @staticmethod
    def _ensure_open(flag: DriftFlag) -> None:
        if flag.status in TERMINAL_FLAG_STATUSES:
            raise ReviewConflictError("Flag is already accepted or resolved")

    def accept(self, team_id: str, flag_id: str, user_id: Optional[str]) -> DriftFlag:
        """Take the manifest's side.

        Field drift writes the manifest value into the service and its synced
        snapshot; removal drift deactivates the service. A dismissed flag is
        reopened first so it ends up ``accepted`` like a pending one.

        Raises:
            NotFoundError: unknown flag, or a flag of another team.
            ReviewConflictError: the flag is already accepted or resolved.
            ValidationFailure: the stored manifest value is not applicable.
        """
        flag = self._load(team_id, flag_id)
        self._ensure_open(flag)

        service = self.services.find_by_id(flag.service_id)
        if service is None:
            raise NotFoundError("Service", flag.service_id)

        if flag.drift_type == DriftType.FIELD_CHANGE.value:
            if flag.field_name in SYNCABLE_FIELDS:
                value = coerce_field_value(flag.field_name, flag.manifest_value)
                setattr(service, flag.field_name, value)
                service.updated_at = utc_now()
                self.services.update_synced_value(service, flag.field_name, value)
        elif flag.drift_type == DriftType.SERVICE_REMOVAL.value:
            self.services.deactivate(service)

        if flag.status == DriftFlagStatus.DISMISSED.value:
            self.flags.reopen(flag.id)
        self.flags.resolve(flag.id, DriftFlagStatus.ACCEPTED, user_id)
        logger.info(
            "Drift flag %s accepted by %s", flag.id, sanitize_for_log(user_id or "system")
        )
        return flag

    def dismiss(self, team_id: str, flag_id: str, user_id: Optional[str]) -> DriftFlag:
        """Keep the local value.

        Dismissing an already dismissed flag is a no-op.
        """
        flag = self._load(team_id, flag_id)
        self._ensure_open(flag)
        if flag.status == DriftFlagStatus.PENDING.value:
            self.flags.resolve(flag.id, DriftFlagStatus.DISMISSED, user_id)
        return flag

    def reopen(self, team_id: str, flag_id: str) -> DriftFlag:
        flag = self._load(team_id, flag_id)
        if flag.status != DriftFlagStatus.DISMISSED.value:
            raise ValidationFailure(
                ["status: Only dismissed flags can be reopened"],
                "Only dismissed flags can be reopened",
            )
        self.flags.reopen(flag.id)
        return flag

    def bulk_accept(self, team_id: str, flag_ids: list[str], user_id: Optional[str]) -> BulkActionResult:
        return self._bulk(flag_ids, lambda fid: self.accept(team_id, fid, user_id))

    def bulk_dismiss(self, team_id: str, flag_ids: list[str], user_id: Optional[str]) -> BulkActionResult:
        return self._bulk(flag_ids, lambda fid: self.dismiss(team_id, fid, user_id))

    def _bulk(self, flag_ids: list[str], action) -> BulkActionResult:
        validate_flag_ids(flag_ids)
        result = BulkActionResult()
        for flag_id in flag_ids:
            try:
                with self.session.begin_nested():
                    action(flag_id)
            except NotFoundError:
                result.failed += 1
                result.errors.append(BulkActionError(flag_id, "Flag not found"))
            except ReviewConflictError:
                result.failed += 1
                result.errors.append(
                    BulkActionError(flag_id, "Flag already accepted or resolved")
                )
            except (ManifestSyncError, SQLAlchemyError) as exc:
                result.failed += 1
                result.errors.append(BulkActionError(flag_id, str(exc)))
            else:
                result.succeeded += 1
        return result


def validate_flag_ids(flag_ids: Any) -> None:
    if not isinstance(flag_ids, list):
        raise ValidationFailure(["flag_ids: must be an array"], "flag_ids must be an array")
    if not flag_ids:
        raise ValidationFailure(["flag_ids: must not be empty"], "flag_ids must not be empty")
    if len(flag_ids) > MAX_BULK_FLAGS:
        raise ValidationFailure(
            [f"flag_ids: must not exceed {MAX_BULK_FLAGS} items"],
            f"flag_ids must not exceed {MAX_BULK_FLAGS} items",
        )
    if not all(isinstance(fid, str) and fid for fid in flag_ids):
        raise ValidationFailure(
            ["flag_ids: must contain non-empty strings"],
            "flag_ids must contain non-empty strings",
        )
