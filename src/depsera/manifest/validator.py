"""Manifest document validation.

Checks run in three levels: document structure, each service entry, then
cross-entry references (duplicate keys and names) together with the optional
``aliases``, ``canonical_overrides`` and ``associations`` sections. A failure
in one section never stops the others from being checked.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import urlparse

from depsera.manifest.types import ValidationIssue, ValidationResult
from depsera.models.services import AssociationType

MANIFEST_KEY_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
MAX_KEY_LENGTH = 128
SUPPORTED_VERSION = 1

MIN_POLL_INTERVAL_MS = 5_000
MAX_POLL_INTERVAL_MS = 3_600_000

KNOWN_TOP_LEVEL_KEYS = {"version", "services", "aliases", "canonical_overrides", "associations"}
KNOWN_SERVICE_FIELDS = {
    "key",
    "name",
    "health_endpoint",
    "description",
    "metrics_endpoint",
    "poll_interval_ms",
    "schema_config",
}
KNOWN_ALIAS_FIELDS = {"alias", "canonical_name"}
KNOWN_OVERRIDE_FIELDS = {"canonical_name", "contact", "impact"}
KNOWN_ASSOCIATION_FIELDS = {
    "service_key",
    "dependency_name",
    "linked_service_key",
    "association_type",
}
VALID_ASSOCIATION_TYPES = [t.value for t in AssociationType]

REQUIRED_SCHEMA_FIELDS = ("name", "healthy")
VALID_SCHEMA_FIELDS = (
    "name",
    "healthy",
    "latency",
    "impact",
    "description",
    "type",
    "checkDetails",
    "contact",
    "error",
    "errorMessage",
    "skipped",
)
STRING_PATH_SCHEMA_FIELDS = ("checkDetails", "contact", "error", "errorMessage")
KEY_SENTINEL = "$key"


class _Issues:
    def __init__(self) -> None:
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def error(self, path: str, message: str) -> None:
        self.errors.append(ValidationIssue(severity="error", path=path, message=message))

    def warning(self, path: str, message: str) -> None:
        self.warnings.append(ValidationIssue(severity="warning", path=path, message=message))

    def warn_unknown(self, obj: dict, known: set[str], base_path: str) -> None:
        for key in obj:
            if key not in known:
                self.warning(f"{base_path}.{key}", f'Unknown field "{key}"')


def _is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_schema_config(value: Any) -> str:
    """Validate a health-response schema mapping and return its compact JSON.

    Accepts either a JSON string or an already-decoded object.

    Raises:
        ValueError: with a message naming the offending part of the mapping.
    """
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            raise ValueError("schema_config must be valid JSON") from None
    elif _is_object(value):
        parsed = value
    else:
        raise ValueError("schema_config must be a JSON string or object")

    if not _is_object(parsed):
        raise ValueError("schema_config must be a JSON object")
    if not _is_non_empty_str(parsed.get("root")):
        raise ValueError("schema_config.root must be a non-empty string")

    fields = parsed.get("fields")
    if not _is_object(fields):
        raise ValueError("schema_config.fields must be an object")
    for required in REQUIRED_SCHEMA_FIELDS:
        if required not in fields:
            raise ValueError(f"schema_config.fields.{required} is required")

    for key, mapping in fields.items():
        if key not in VALID_SCHEMA_FIELDS:
            raise ValueError(
                f'schema_config.fields contains unknown field "{key}". '
                f"Valid fields: {', '.join(VALID_SCHEMA_FIELDS)}"
            )
        if key in STRING_PATH_SCHEMA_FIELDS:
            if not _is_non_empty_str(mapping):
                raise ValueError(f"schema_config.fields.{key} must be a non-empty string path")
        elif _is_object(mapping):
            if not _is_non_empty_str(mapping.get("field")):
                raise ValueError(f"schema_config.fields.{key}.field must be a non-empty string")
        elif not _is_non_empty_str(mapping):
            raise ValueError(
                f"schema_config.fields.{key} must be a string path or an object with a field"
            )
        if key != "name" and mapping == KEY_SENTINEL:
            raise ValueError(
                f'schema_config.fields.{key} cannot use "{KEY_SENTINEL}"; '
                "it is only valid for the name field"
            )

    return json.dumps(parsed, separators=(",", ":"))


def _validate_url(value: Any, path: str, issues: _Issues) -> bool:
    if not _is_non_empty_str(value):
        issues.error(path, "Must be a non-empty string")
        return False
    if not is_valid_url(value):
        issues.error(path, "Must be a valid HTTP or HTTPS URL")
        return False
    return True


def _validate_structure(data: Any, issues: _Issues) -> tuple[bool, int | None]:
    if not _is_object(data):
        issues.error("", "Manifest must be a JSON object")
        return False, None

    for key in data:
        if key not in KNOWN_TOP_LEVEL_KEYS:
            issues.warning(key, f'Unknown top-level key "{key}"')

    version = data.get("version")
    if version is None:
        issues.error("version", "version is required")
        return False, None
    if isinstance(version, bool) or version != SUPPORTED_VERSION:
        issues.error(
            "version",
            f"Unsupported manifest version: {version}. "
            f"Only version {SUPPORTED_VERSION} is supported",
        )
        return False, None

    if not isinstance(data.get("services"), list):
        issues.error("services", "services must be present and be an array")
        return False, SUPPORTED_VERSION

    return True, SUPPORTED_VERSION


def _validate_service(entry: Any, index: int, issues: _Issues) -> bool:
    path = f"services[{index}]"
    if not _is_object(entry):
        issues.error(path, "Service entry must be an object")
        return False

    valid = True
    issues.warn_unknown(entry, KNOWN_SERVICE_FIELDS, path)

    key = entry.get("key")
    if not _is_non_empty_str(key):
        issues.error(f"{path}.key", "key is required and must be a non-empty string")
        valid = False
    elif len(key) > MAX_KEY_LENGTH:
        issues.error(f"{path}.key", f"key must be at most {MAX_KEY_LENGTH} characters")
        valid = False
    elif not MANIFEST_KEY_RE.match(key):
        issues.error(
            f"{path}.key",
            "key must match pattern ^[a-z0-9][a-z0-9_-]*$ "
            "(lowercase alphanumeric, hyphens, underscores)",
        )
        valid = False

    if not _is_non_empty_str(entry.get("name")):
        issues.error(f"{path}.name", "name is required and must be a non-empty string")
        valid = False

    health = entry.get("health_endpoint")
    if not _is_non_empty_str(health):
        issues.error(
            f"{path}.health_endpoint",
            "health_endpoint is required and must be a non-empty string",
        )
        valid = False
    elif not _validate_url(health, f"{path}.health_endpoint", issues):
        valid = False

    description = entry.get("description")
    if description is not None and not isinstance(description, str):
        issues.error(f"{path}.description", "description must be a string")
        valid = False

    metrics = entry.get("metrics_endpoint")
    if metrics is not None:
        if not _is_non_empty_str(metrics):
            issues.error(f"{path}.metrics_endpoint", "metrics_endpoint must be a non-empty string")
            valid = False
        elif not _validate_url(metrics, f"{path}.metrics_endpoint", issues):
            valid = False

    interval = entry.get("poll_interval_ms")
    if interval is not None:
        if not _is_integer(interval):
            issues.error(f"{path}.poll_interval_ms", "poll_interval_ms must be an integer")
            valid = False
        elif not MIN_POLL_INTERVAL_MS <= interval <= MAX_POLL_INTERVAL_MS:
            issues.error(
                f"{path}.poll_interval_ms",
                f"poll_interval_ms must be between {MIN_POLL_INTERVAL_MS} "
                f"and {MAX_POLL_INTERVAL_MS}",
            )
            valid = False

    schema = entry.get("schema_config")
    if schema is not None:
        if not _is_object(schema):
            issues.error(f"{path}.schema_config", "schema_config must be an object")
            valid = False
        else:
            try:
                validate_schema_config(schema)
            except ValueError as exc:
                issues.error(f"{path}.schema_config", str(exc))
                valid = False

    return valid


def _cross_reference(services: list, issues: _Issues) -> set[str]:
    seen_keys: dict[str, int] = {}
    seen_names: dict[str, int] = {}
    for i, entry in enumerate(services):
        if not _is_object(entry):
            continue
        key = entry.get("key")
        if _is_non_empty_str(key):
            if key in seen_keys:
                issues.error(
                    f"services[{i}].key",
                    f'Duplicate key "{key}" (first seen at services[{seen_keys[key]}])',
                )
            else:
                seen_keys[key] = i
        name = entry.get("name")
        if _is_non_empty_str(name):
            if name in seen_names:
                issues.warning(
                    f"services[{i}].name",
                    f'Duplicate name "{name}" (first seen at services[{seen_names[name]}])',
                )
            else:
                seen_names[name] = i
    return set(seen_keys)


def _validate_aliases(aliases: Any, issues: _Issues) -> None:
    if aliases is None:
        return
    if not isinstance(aliases, list):
        issues.error("aliases", "aliases must be an array")
        return

    seen: set[str] = set()
    for i, entry in enumerate(aliases):
        path = f"aliases[{i}]"
        if not _is_object(entry):
            issues.error(path, "Alias entry must be an object")
            continue
        issues.warn_unknown(entry, KNOWN_ALIAS_FIELDS, path)
        alias = entry.get("alias")
        if not _is_non_empty_str(alias):
            issues.error(f"{path}.alias", "alias is required and must be a non-empty string")
            continue
        if not _is_non_empty_str(entry.get("canonical_name")):
            issues.error(
                f"{path}.canonical_name",
                "canonical_name is required and must be a non-empty string",
            )
            continue
        if alias in seen:
            issues.error(f"{path}.alias", f'Duplicate alias "{alias}"')
        else:
            seen.add(alias)


def _validate_overrides(overrides: Any, issues: _Issues) -> None:
    if overrides is None:
        return
    if not isinstance(overrides, list):
        issues.error("canonical_overrides", "canonical_overrides must be an array")
        return

    seen: set[str] = set()
    for i, entry in enumerate(overrides):
        path = f"canonical_overrides[{i}]"
        if not _is_object(entry):
            issues.error(path, "Canonical override entry must be an object")
            continue
        issues.warn_unknown(entry, KNOWN_OVERRIDE_FIELDS, path)
        name = entry.get("canonical_name")
        if not _is_non_empty_str(name):
            issues.error(
                f"{path}.canonical_name",
                "canonical_name is required and must be a non-empty string",
            )
            continue

        contact = entry.get("contact")
        impact = entry.get("impact")
        if contact is None and impact is None:
            issues.error(path, "At least one of contact or impact is required")
            continue
        if contact is not None and not _is_object(contact):
            issues.error(f"{path}.contact", "contact must be an object")
        if impact is not None and not isinstance(impact, str):
            issues.error(f"{path}.impact", "impact must be a string")

        if name in seen:
            issues.error(f"{path}.canonical_name", f'Duplicate canonical_name "{name}"')
        else:
            seen.add(name)


def _validate_associations(associations: Any, service_keys: set[str], issues: _Issues) -> None:
    if associations is None:
        return
    if not isinstance(associations, list):
        issues.error("associations", "associations must be an array")
        return

    seen: set[tuple[str, str, str]] = set()
    for i, entry in enumerate(associations):
        path = f"associations[{i}]"
        if not _is_object(entry):
            issues.error(path, "Association entry must be an object")
            continue
        issues.warn_unknown(entry, KNOWN_ASSOCIATION_FIELDS, path)

        missing = [
            field
            for field in ("service_key", "dependency_name", "linked_service_key", "association_type")
            if not _is_non_empty_str(entry.get(field))
        ]
        if missing:
            field = missing[0]
            issues.error(f"{path}.{field}", f"{field} is required and must be a non-empty string")
            continue

        association_type = entry["association_type"]
        if association_type not in VALID_ASSOCIATION_TYPES:
            issues.error(
                f"{path}.association_type",
                f"association_type must be one of: {', '.join(VALID_ASSOCIATION_TYPES)}",
            )
            continue

        service_key = entry["service_key"]
        if service_key not in service_keys:
            issues.error(
                f"{path}.service_key",
                f'service_key "{service_key}" does not match any service key in the manifest',
            )

        dependency_name = entry["dependency_name"]
        key = (service_key, dependency_name, association_type)
        if key in seen:
            issues.error(
                path,
                f'Duplicate association: service_key="{service_key}", '
                f'dependency_name="{dependency_name}", association_type="{association_type}"',
            )
        else:
            seen.add(key)


def validate_manifest(data: Any) -> ValidationResult:
    """Validate a decoded manifest document and collect every issue found."""
    issues = _Issues()
    structure_ok, version = _validate_structure(data, issues)
    if not structure_ok:
        return ValidationResult(
            valid=False,
            version=version,
            errors=issues.errors,
            warnings=issues.warnings,
        )

    services = data["services"]
    valid_count = sum(
        1 for i, entry in enumerate(services) if _validate_service(entry, i, issues)
    )
    service_keys = _cross_reference(services, issues)

    _validate_aliases(data.get("aliases"), issues)
    _validate_overrides(data.get("canonical_overrides"), issues)
    _validate_associations(data.get("associations"), service_keys, issues)

    return ValidationResult(
        valid=not issues.errors,
        version=version,
        service_count=len(services),
        valid_count=valid_count,
        errors=issues.errors,
        warnings=issues.warnings,
    )
