"""Service catalog models touched by manifest synchronization.

Only the columns the sync engine reads or writes are modelled here; health
polling state lives with the polling subsystem.
"""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from depsera.models.base import Base, new_id, utc_now

DEFAULT_POLL_INTERVAL_MS = 30_000


class AssociationType(str, Enum):
    API_CALL = "api_call"
    DATABASE = "database"
    MESSAGE_QUEUE = "message_queue"
    CACHE = "cache"
    OTHER = "other"


class Service(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=new_id)
    team_id = Column(
        String(36),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(Text, nullable=False)
    health_endpoint = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    metrics_endpoint = Column(Text, nullable=True)
    poll_interval_ms = Column(Integer, nullable=False, default=DEFAULT_POLL_INTERVAL_MS)
    schema_config = Column(Text, nullable=True, comment="JSON schema mapping")
    is_active = Column(Boolean, nullable=False, default=True)

    manifest_key = Column(String(128), nullable=True)
    manifest_managed = Column(Boolean, nullable=False, default=False)
    manifest_last_synced_values = Column(
        Text,
        nullable=True,
        comment="JSON snapshot of the manifest values written by the last sync",
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    team = relationship("Team", back_populates="services")
    dependencies = relationship(
        "Dependency",
        back_populates="service",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    drift_flags = relationship(
        "DriftFlag",
        back_populates="service",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "ix_services_team_manifest_key",
            "team_id",
            "manifest_key",
            unique=True,
            sqlite_where=text("manifest_key IS NOT NULL"),
            postgresql_where=text("manifest_key IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Service(id={self.id!r}, name={self.name!r}, "
            f"manifest_key={self.manifest_key!r})>"
        )


class Dependency(Base):
    """A downstream dependency reported by a service's health endpoint."""

    __tablename__ = "dependencies"

    id = Column(String(36), primary_key=True, default=new_id)
    service_id = Column(
        String(36),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(Text, nullable=False)
    canonical_name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    service = relationship("Service", back_populates="dependencies")
    associations = relationship(
        "DependencyAssociation",
        back_populates="dependency",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DependencyAlias(Base):
    __tablename__ = "dependency_aliases"

    id = Column(String(36), primary_key=True, default=new_id)
    alias = Column(Text, nullable=False, unique=True)
    canonical_name = Column(Text, nullable=False)
    manifest_team_id = Column(
        String(36),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
        comment="Team whose manifest owns this alias",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class CanonicalOverride(Base):
    __tablename__ = "dependency_canonical_overrides"

    id = Column(String(36), primary_key=True, default=new_id)
    canonical_name = Column(Text, nullable=False)
    team_id = Column(
        String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
    )
    contact_override = Column(Text, nullable=True, comment="JSON contact object")
    impact_override = Column(Text, nullable=True)
    manifest_managed = Column(Boolean, nullable=False, default=False)
    updated_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index(
            "ix_canonical_overrides_team_scoped",
            "team_id",
            "canonical_name",
            unique=True,
            sqlite_where=text("team_id IS NOT NULL"),
            postgresql_where=text("team_id IS NOT NULL"),
        ),
    )


class DependencyAssociation(Base):
    __tablename__ = "dependency_associations"

    id = Column(String(36), primary_key=True, default=new_id)
    dependency_id = Column(
        String(36),
        ForeignKey("dependencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    linked_service_id = Column(
        String(36),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
    )
    association_type = Column(String(32), nullable=False, default=AssociationType.OTHER.value)
    manifest_managed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    dependency = relationship("Dependency", back_populates="associations")

    __table_args__ = (
        UniqueConstraint(
            "dependency_id", "linked_service_id", name="uq_association_dependency_target"
        ),
    )
