"""Per-team manifest configuration."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from depsera.manifest.types import SyncPolicy, SyncSummary
from depsera.models.manifest import TeamManifestConfig
from depsera.stores.drift_flags import DriftFlagStore
from depsera.utils.datetime import utc_now
from depsera.utils.logging import redact_url, sanitize_for_log

logger = logging.getLogger(__name__)


def config_policy(config: TeamManifestConfig) -> SyncPolicy:
    return SyncPolicy.from_json(config.sync_policy)


def config_summary(config: TeamManifestConfig) -> Optional[SyncSummary]:
    return SyncSummary.from_json(config.last_sync_summary)


class ManifestConfigStore:
    def __init__(self, session: Session):
        self.session = session

    def find_by_team_id(self, team_id: str) -> Optional[TeamManifestConfig]:
        return (
            self.session.query(TeamManifestConfig)
            .filter(TeamManifestConfig.team_id == team_id)
            .one_or_none()
        )

    def find_all(self) -> list[TeamManifestConfig]:
        return self.session.query(TeamManifestConfig).order_by(TeamManifestConfig.created_at).all()

    def find_all_enabled(self) -> list[TeamManifestConfig]:
        return (
            self.session.query(TeamManifestConfig)
            .filter(TeamManifestConfig.is_enabled.is_(True))
            .order_by(TeamManifestConfig.created_at)
            .all()
        )

    def create(
        self,
        team_id: str,
        manifest_url: str,
        is_enabled: bool = True,
        sync_policy: Optional[dict[str, Any]] = None,
    ) -> TeamManifestConfig:
        """Create the team's config, or replace URL, flag and policy if one exists.

        Raises:
            pydantic.ValidationError: if ``sync_policy`` holds an unknown setting value.
        """
        policy = SyncPolicy().merged(sync_policy or {})
        config = self.find_by_team_id(team_id)
        if config is None:
            config = TeamManifestConfig(team_id=team_id)
            self.session.add(config)
        config.manifest_url = manifest_url
        config.is_enabled = is_enabled
        config.sync_policy = policy.to_json()
        config.updated_at = utc_now()
        self.session.flush()
        logger.info(
            "Saved manifest config for team %s (%s)",
            sanitize_for_log(team_id),
            redact_url(manifest_url),
        )
        return config

    def update(
        self,
        team_id: str,
        manifest_url: Optional[str] = None,
        is_enabled: Optional[bool] = None,
        sync_policy: Optional[dict[str, Any]] = None,
    ) -> Optional[TeamManifestConfig]:
        """Apply a partial update; policy keys are merged into the stored policy."""
        config = self.find_by_team_id(team_id)
        if config is None:
            return None
        if manifest_url is not None:
            config.manifest_url = manifest_url
        if is_enabled is not None:
            config.is_enabled = is_enabled
        if sync_policy:
            config.sync_policy = config_policy(config).merged(sync_policy).to_json()
        config.updated_at = utc_now()
        self.session.flush()
        return config

    def update_sync_result(
        self,
        team_id: str,
        status: str,
        error: Optional[str],
        summary: SyncSummary,
        synced_at: Optional[datetime] = None,
    ) -> bool:
        config = self.find_by_team_id(team_id)
        if config is None:
            return False
        config.last_sync_at = synced_at or utc_now()
        config.last_sync_status = status
        config.last_sync_error = error
        config.last_sync_summary = summary.to_json()
        self.session.flush()
        return True

    def delete(self, team_id: str) -> bool:
        """Remove the config. Services stay; the team's open drift flags are closed."""
        config = self.find_by_team_id(team_id)
        if config is None:
            return False
        closed = DriftFlagStore(self.session).resolve_all_for_team(team_id)
        self.session.delete(config)
        self.session.flush()
        logger.info(
            "Deleted manifest config for team %s, closed %d drift flags",
            sanitize_for_log(team_id),
            closed,
        )
        return True
