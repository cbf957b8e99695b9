"""Runtime configuration read from environment variables.

Environment Variables:
    DEPSERA_DATABASE_URI: SQLAlchemy URL for the catalog database
    DATABASE_URI / DATABASE_URL: Legacy fallbacks for the database URL
    MANIFEST_SYNC_ENABLED: ``false`` or ``0`` disables scheduled syncs
    MANIFEST_SYNC_INTERVAL_SECONDS: Minimum age of a team's last sync before
        the scheduler dispatches another one
    MANIFEST_FETCH_TIMEOUT_SECONDS: Hard timeout for the manifest HTTP fetch
    MANIFEST_MAX_BYTES: Maximum accepted manifest body size
    MANIFEST_SYNC_COOLDOWN_SECONDS: Minimum spacing of manual syncs per team
    DRIFT_FLAG_RETENTION_DAYS: Age after which terminal drift flags are purged
    SYNC_HISTORY_RETENTION_DAYS: Age after which sync history rows are purged
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_DATABASE_URI = "sqlite:///./depsera.db"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _bool_env(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def get_database_uri() -> str:
    """Get the catalog database URI with fallback chain."""
    return (
        os.getenv("DEPSERA_DATABASE_URI")
        or os.getenv("DATABASE_URI")
        or os.getenv("DATABASE_URL")
        or DEFAULT_DATABASE_URI
    )


@dataclass(frozen=True)
class ManifestSettings:
    sync_enabled: bool = True
    sync_interval_seconds: int = 3600
    fetch_timeout_seconds: int = 10
    max_manifest_bytes: int = 1_048_576
    manual_cooldown_seconds: int = 60
    drift_retention_days: int = 90
    history_retention_days: int = 90


def load_settings() -> ManifestSettings:
    return ManifestSettings(
        sync_enabled=_bool_env("MANIFEST_SYNC_ENABLED", True),
        sync_interval_seconds=_int_env("MANIFEST_SYNC_INTERVAL_SECONDS", 3600),
        fetch_timeout_seconds=_int_env("MANIFEST_FETCH_TIMEOUT_SECONDS", 10),
        max_manifest_bytes=_int_env("MANIFEST_MAX_BYTES", 1_048_576),
        manual_cooldown_seconds=_int_env("MANIFEST_SYNC_COOLDOWN_SECONDS", 60),
        drift_retention_days=_int_env("DRIFT_FLAG_RETENTION_DAYS", 90),
        history_retention_days=_int_env("SYNC_HISTORY_RETENTION_DAYS", 90),
    )
