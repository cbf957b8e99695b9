"""Compare a validated manifest against a team's stored services.

The differ is pure: it reads the service rows it is handed and never touches
the session. It does not know about sync policy either; it reports *what*
differs and the orchestrator asks the policy engine what to do about it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from depsera.manifest.types import (
    SYNCABLE_FIELDS,
    ManifestServiceEntry,
    dumps_compact,
    loads_or_none,
)
from depsera.models.services import Service


class DiffKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DRIFT_CANDIDATE = "drift_candidate"
    REMOVAL_CANDIDATE = "removal_candidate"


@dataclass(frozen=True)
class DiffRecord:
    """One categorized difference.

    Records for the same manifest key are always adjacent: an ``UPDATED``
    record (safe fields) comes first, followed by one ``DRIFT_CANDIDATE`` per
    drifted field.
    """

    kind: DiffKind
    manifest_key: str
    entry: Optional[ManifestServiceEntry] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    fields_changed: tuple[str, ...] = field(default_factory=tuple)
    field_name: Optional[str] = None
    manifest_value: Optional[str] = None
    current_value: Optional[str] = None


def normalize_value(value: Any) -> str:
    """Comparable string form: None -> '', objects -> compact JSON."""
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return dumps_compact(value)
    if isinstance(value, bool):
        return json.dumps(value)
    return str(value)


def parse_synced_values(raw: Optional[str]) -> Optional[dict[str, Any]]:
    """Decode ``manifest_last_synced_values``; None means never synced."""
    data = loads_or_none(raw)
    return data if isinstance(data, dict) else None


def _service_value(service: Service, field_name: str) -> Any:
    return getattr(service, field_name)


def _diff_existing(entry: ManifestServiceEntry, service: Service) -> list[DiffRecord]:
    last_synced = parse_synced_values(service.manifest_last_synced_values)
    first_sync = last_synced is None

    safe_fields: list[str] = []
    drift: list[DiffRecord] = []

    for field_name in entry.provided_fields():
        manifest_str = normalize_value(getattr(entry, field_name))
        current_str = normalize_value(_service_value(service, field_name))
        if manifest_str == current_str:
            continue

        if first_sync:
            safe_fields.append(field_name)
            continue

        # Unchanged since the last sync wrote it, so nobody edited it locally.
        if current_str == normalize_value(last_synced.get(field_name)):
            safe_fields.append(field_name)
            continue

        drift.append(
            DiffRecord(
                kind=DiffKind.DRIFT_CANDIDATE,
                manifest_key=entry.key,
                entry=entry,
                service_id=service.id,
                service_name=service.name,
                field_name=field_name,
                manifest_value=manifest_str,
                current_value=current_str,
            )
        )

    records: list[DiffRecord] = []
    if safe_fields:
        records.append(
            DiffRecord(
                kind=DiffKind.UPDATED,
                manifest_key=entry.key,
                entry=entry,
                service_id=service.id,
                service_name=service.name,
                fields_changed=tuple(safe_fields),
            )
        )
    records.extend(drift)
    if not records:
        records.append(
            DiffRecord(
                kind=DiffKind.UNCHANGED,
                manifest_key=entry.key,
                entry=entry,
                service_id=service.id,
                service_name=service.name,
            )
        )
    return records


def diff_manifest(
    entries: Iterable[ManifestServiceEntry],
    services: Iterable[Service],
) -> list[DiffRecord]:
    """Diff manifest entries against a team's services.

    Args:
        entries: Validated service entries in manifest order.
        services: The team's services. Any service carrying a ``manifest_key``
            can be matched; only ``manifest_managed`` ones become removal
            candidates when their key disappears from the manifest.

    Returns:
        Records in manifest order, followed by removal candidates ordered by
        manifest key.
    """
    by_key: dict[str, Service] = {
        svc.manifest_key: svc for svc in services if svc.manifest_key
    }
    matched: set[str] = set()
    records: list[DiffRecord] = []

    for entry in entries:
        service = by_key.get(entry.key)
        if service is None:
            records.append(
                DiffRecord(kind=DiffKind.CREATED, manifest_key=entry.key, entry=entry)
            )
            continue
        matched.add(entry.key)
        records.extend(_diff_existing(entry, service))

    for key in sorted(by_key):
        service = by_key[key]
        if key in matched or not service.manifest_managed:
            continue
        records.append(
            DiffRecord(
                kind=DiffKind.REMOVAL_CANDIDATE,
                manifest_key=key,
                service_id=service.id,
                service_name=service.name,
            )
        )

    return records
