"""Typed payloads for manifest sync.

JSON text columns are only ever read and written through these models so the
sync engine never handles raw dicts. Readers treat malformed or absent JSON as
"no data".
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

FieldDriftPolicy = Literal["flag", "manifest_wins", "local_wins"]
RemovalPolicy = Literal["flag", "deactivate", "delete"]
MetadataRemovalPolicy = Literal["remove", "keep"]

ChangeAction = Literal[
    "created", "updated", "drift_flagged", "deactivated", "deleted", "unchanged"
]

SYNCABLE_FIELDS: tuple[str, ...] = (
    "name",
    "health_endpoint",
    "description",
    "metrics_endpoint",
    "poll_interval_ms",
    "schema_config",
)

# Fields a manifest may explicitly set to null to clear the stored value.
CLEARABLE_FIELDS = frozenset({"description", "metrics_endpoint", "schema_config"})


def dumps_compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def loads_or_none(raw: str | None) -> Any:
    """Decode a JSON text column, returning None when absent or malformed."""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


class SyncPolicy(BaseModel):
    on_field_drift: FieldDriftPolicy = "flag"
    on_removal: RemovalPolicy = "flag"
    on_alias_removal: MetadataRemovalPolicy = "keep"
    on_override_removal: MetadataRemovalPolicy = "keep"
    on_association_removal: MetadataRemovalPolicy = "keep"

    @classmethod
    def from_json(cls, raw: str | None) -> "SyncPolicy":
        """Parse a stored policy; unknown or invalid settings fall back to defaults."""
        data = loads_or_none(raw)
        if not isinstance(data, dict):
            return cls()
        merged: dict[str, Any] = {}
        for name in cls.model_fields:
            if name not in data:
                continue
            try:
                cls.model_validate({name: data[name]})
            except ValidationError:
                logger.warning("Ignoring invalid stored sync policy value for %s", name)
                continue
            merged[name] = data[name]
        return cls.model_validate(merged)

    def merged(self, partial: dict[str, Any]) -> "SyncPolicy":
        """Return a copy with ``partial`` applied. Invalid values raise."""
        return type(self).model_validate({**self.model_dump(), **partial})

    def to_json(self) -> str:
        return self.model_dump_json()


class ServiceCounts(BaseModel):
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    deleted: int = 0
    drift_flagged: int = 0
    unchanged: int = 0


class MetadataCounts(BaseModel):
    created: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0


class AssociationCounts(BaseModel):
    created: int = 0
    removed: int = 0
    unchanged: int = 0


class SyncSummary(BaseModel):
    services: ServiceCounts = Field(default_factory=ServiceCounts)
    aliases: MetadataCounts = Field(default_factory=MetadataCounts)
    overrides: MetadataCounts = Field(default_factory=MetadataCounts)
    associations: AssociationCounts = Field(default_factory=AssociationCounts)

    @classmethod
    def from_json(cls, raw: str | None) -> "SyncSummary | None":
        data = loads_or_none(raw)
        if not isinstance(data, dict):
            return None
        try:
            return cls.model_validate(data)
        except ValidationError:
            return None

    def to_json(self) -> str:
        return self.model_dump_json()


class SyncChange(BaseModel):
    manifest_key: str
    service_name: str
    action: ChangeAction
    fields_changed: list[str] | None = None
    drift_fields: list[str] | None = None


class SyncResult(BaseModel):
    status: Literal["success", "partial", "failed"]
    summary: SyncSummary = Field(default_factory=SyncSummary)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    changes: list[SyncChange] = Field(default_factory=list)
    duration_ms: int = 0

    @classmethod
    def failed(cls, error: str, duration_ms: int = 0, warnings: list[str] | None = None):
        return cls(
            status="failed",
            errors=[error],
            warnings=warnings or [],
            duration_ms=duration_ms,
        )


def decode_string_list(raw: str | None) -> list[str]:
    data = loads_or_none(raw)
    if not isinstance(data, list):
        return []
    return [str(item) for item in data]


# --- Manifest document ---


class ManifestServiceEntry(BaseModel):
    """One validated service block.

    Optional fields keep the distinction between "absent" (not synced) and an
    explicit value; use :meth:`provided_fields` to see which were given.
    """

    key: str
    name: str
    health_endpoint: str
    description: str | None = None
    metrics_endpoint: str | None = None
    poll_interval_ms: int | None = None
    schema_config: dict[str, Any] | None = None

    def provided_fields(self) -> list[str]:
        return [f for f in SYNCABLE_FIELDS if f in self.model_fields_set]

    def synced_values(self) -> dict[str, Any]:
        """Snapshot stored in ``manifest_last_synced_values``."""
        return {f: getattr(self, f) for f in self.provided_fields()}


class ManifestAlias(BaseModel):
    alias: str
    canonical_name: str


class ManifestCanonicalOverride(BaseModel):
    canonical_name: str
    contact: dict[str, Any] | None = None
    impact: str | None = None


class ManifestAssociation(BaseModel):
    service_key: str
    dependency_name: str
    linked_service_key: str
    association_type: str


class ParsedManifest(BaseModel):
    version: int = 1
    services: list[ManifestServiceEntry] = Field(default_factory=list)
    aliases: list[ManifestAlias] = Field(default_factory=list)
    canonical_overrides: list[ManifestCanonicalOverride] = Field(default_factory=list)
    associations: list[ManifestAssociation] = Field(default_factory=list)

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "ParsedManifest":
        """Build from a document that already passed validation.

        Unknown keys are dropped so entries only carry the fields they set.
        """
        services = []
        for raw in data.get("services") or []:
            known = {
                k: v
                for k, v in raw.items()
                if k == "key"
                or (k in SYNCABLE_FIELDS and (v is not None or k in CLEARABLE_FIELDS))
            }
            services.append(ManifestServiceEntry.model_validate(known))
        return cls(
            version=data.get("version", 1),
            services=services,
            aliases=[
                ManifestAlias(alias=a["alias"], canonical_name=a["canonical_name"])
                for a in data.get("aliases") or []
            ],
            canonical_overrides=[
                ManifestCanonicalOverride(
                    canonical_name=o["canonical_name"],
                    contact=o.get("contact"),
                    impact=o.get("impact"),
                )
                for o in data.get("canonical_overrides") or []
            ],
            associations=[
                ManifestAssociation(
                    service_key=a["service_key"],
                    dependency_name=a["dependency_name"],
                    linked_service_key=a["linked_service_key"],
                    association_type=a["association_type"],
                )
                for a in data.get("associations") or []
            ],
        )


class ValidationIssue(BaseModel):
    severity: Literal["error", "warning"]
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


class ValidationResult(BaseModel):
    valid: bool
    version: int | None = None
    service_count: int = 0
    valid_count: int = 0
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)


class FetchResult(BaseModel):
    url: str
    data: Any = None
    size_bytes: int = 0
