"""Service row operations used by manifest sync and drift review."""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from depsera.manifest.types import ManifestServiceEntry, dumps_compact, loads_or_none
from depsera.models.services import DEFAULT_POLL_INTERVAL_MS, Service
from depsera.utils.datetime import utc_now


def column_value(field_name: str, value: Any) -> Any:
    """Convert a manifest value to what the ``services`` column stores."""
    if field_name == "schema_config":
        return dumps_compact(value) if value is not None else None
    return value


class ServiceStore:
    def __init__(self, session: Session):
        self.session = session

    def find_by_id(self, service_id: str) -> Optional[Service]:
        return self.session.get(Service, service_id)

    def find_by_team_id(self, team_id: str) -> list[Service]:
        return (
            self.session.query(Service)
            .filter(Service.team_id == team_id)
            .order_by(Service.name)
            .all()
        )

    def create_from_manifest(self, team_id: str, entry: ManifestServiceEntry) -> Service:
        service = Service(
            team_id=team_id,
            name=entry.name,
            health_endpoint=entry.health_endpoint,
            description=entry.description,
            metrics_endpoint=entry.metrics_endpoint,
            poll_interval_ms=entry.poll_interval_ms or DEFAULT_POLL_INTERVAL_MS,
            schema_config=column_value("schema_config", entry.schema_config),
            is_active=True,
            manifest_key=entry.key,
            manifest_managed=True,
            manifest_last_synced_values=json.dumps(entry.synced_values()),
        )
        self.session.add(service)
        self.session.flush()
        return service

    def apply_manifest_fields(
        self, service: Service, entry: ManifestServiceEntry, fields: Iterable[str]
    ) -> None:
        """Write ``fields`` from ``entry`` and claim the service for the manifest."""
        for field_name in fields:
            setattr(service, field_name, column_value(field_name, getattr(entry, field_name)))
        service.manifest_key = entry.key
        service.manifest_managed = True
        service.updated_at = utc_now()
        self.session.flush()

    def set_synced_values(self, service: Service, entry: ManifestServiceEntry) -> None:
        service.manifest_last_synced_values = json.dumps(entry.synced_values())
        self.session.flush()

    def update_synced_value(self, service: Service, field_name: str, value: Any) -> None:
        """Record one field as last written by the manifest."""
        snapshot = loads_or_none(service.manifest_last_synced_values)
        if not isinstance(snapshot, dict):
            snapshot = {}
        if field_name == "schema_config" and isinstance(value, str):
            value = loads_or_none(value)
        snapshot[field_name] = value
        service.manifest_last_synced_values = json.dumps(snapshot)
        self.session.flush()

    def deactivate(self, service: Service) -> bool:
        if not service.is_active:
            return False
        service.is_active = False
        service.updated_at = utc_now()
        self.session.flush()
        return True

    def delete(self, service: Service) -> None:
        self.session.delete(service)
        self.session.flush()
