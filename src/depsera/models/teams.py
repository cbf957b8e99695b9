from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, String, Text
from sqlalchemy.orm import relationship

from depsera.models.base import Base, new_id, utc_now


class Team(Base):
    """A team owning services.

    ``key`` namespaces the team's manifest keys when other teams reference
    them (``<team key>/<manifest key>``).
    """

    __tablename__ = "teams"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(Text, nullable=False)
    key = Column(String(128), nullable=True, unique=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    services = relationship(
        "Service",
        back_populates="team",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    manifest_config = relationship(
        "TeamManifestConfig",
        back_populates="team",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Team(id={self.id!r}, name={self.name!r}, key={self.key!r})>"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=True, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<User(id={self.id!r}, name={self.name!r})>"
