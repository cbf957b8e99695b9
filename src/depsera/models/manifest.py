"""Manifest sync configuration, run history and drift flag models."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Boolean,
)
from sqlalchemy.orm import relationship

from depsera.models.base import Base, new_id, utc_now


class DriftType(str, Enum):
    FIELD_CHANGE = "field_change"
    SERVICE_REMOVAL = "service_removal"


class DriftFlagStatus(str, Enum):
    PENDING = "pending"
    DISMISSED = "dismissed"
    ACCEPTED = "accepted"
    RESOLVED = "resolved"


ACTIVE_FLAG_STATUSES = (DriftFlagStatus.PENDING.value, DriftFlagStatus.DISMISSED.value)
TERMINAL_FLAG_STATUSES = (DriftFlagStatus.ACCEPTED.value, DriftFlagStatus.RESOLVED.value)


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class TeamManifestConfig(Base):
    """Per-team manifest source, sync policy and cached last-run snapshot."""

    __tablename__ = "team_manifest_config"

    id = Column(String(36), primary_key=True, default=new_id)
    team_id = Column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    manifest_url = Column(Text, nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    sync_policy = Column(Text, nullable=True, comment="JSON SyncPolicy")

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(String(16), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    last_sync_summary = Column(Text, nullable=True, comment="JSON SyncSummary")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    team = relationship("Team", back_populates="manifest_config")

    def __repr__(self) -> str:
        return (
            f"<TeamManifestConfig(team_id={self.team_id!r}, "
            f"enabled={self.is_enabled}, last_status={self.last_sync_status!r})>"
        )


class ManifestSyncHistory(Base):
    """One immutable row per sync run."""

    __tablename__ = "manifest_sync_history"

    id = Column(String(36), primary_key=True, default=new_id)
    team_id = Column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    trigger_type = Column(String(16), nullable=False)
    triggered_by = Column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    manifest_url = Column(Text, nullable=False)
    status = Column(String(16), nullable=False)
    summary = Column(Text, nullable=True, comment="JSON SyncSummary")
    errors = Column(Text, nullable=True, comment="JSON list of error strings")
    warnings = Column(Text, nullable=True, comment="JSON list of warning strings")
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_manifest_sync_history_team_created", "team_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ManifestSyncHistory(id={self.id!r}, team_id={self.team_id!r}, "
            f"status={self.status!r})>"
        )


class DriftFlag(Base):
    """A discrepancy between the manifest and a stored service.

    ``field_name``, ``manifest_value`` and ``current_value`` are null for
    ``service_removal`` flags. Values are stored in their normalized string
    form as produced by the differ.
    """

    __tablename__ = "drift_flags"

    id = Column(String(36), primary_key=True, default=new_id)
    team_id = Column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    service_id = Column(
        String(36),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
    )
    drift_type = Column(String(32), nullable=False)
    field_name = Column(String(64), nullable=True)
    manifest_value = Column(Text, nullable=True)
    current_value = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=DriftFlagStatus.PENDING.value)
    first_detected_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    last_detected_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    sync_history_id = Column(
        String(36),
        ForeignKey(
            "manifest_sync_history.id",
            ondelete="SET NULL",
            deferrable=True,
            initially="DEFERRED",
        ),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    service = relationship("Service", back_populates="drift_flags")

    __table_args__ = (
        Index("ix_drift_flags_team_status", "team_id", "status"),
        Index("ix_drift_flags_service_status", "service_id", "status"),
        Index("ix_drift_flags_last_detected", "team_id", "last_detected_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<DriftFlag(id={self.id!r}, service_id={self.service_id!r}, "
            f"type={self.drift_type!r}, field={self.field_name!r}, "
            f"status={self.status!r})>"
        )
