"""Initial service catalog tables.

Revision ID: 3c1d9e0a7b21
Revises:
Create Date: 2026-09-02 10:00:00

Creates tables for:
- teams, users
- services: catalog entries polled for health
- dependencies: downstream dependencies discovered by polling
- dependency_aliases, dependency_canonical_overrides, dependency_associations
"""

from alembic import op
import sqlalchemy as sa


revision = "3c1d9e0a7b21"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "teams",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("key", sa.String(128), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "services",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("team_id", sa.String(36), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("health_endpoint", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metrics_endpoint", sa.Text(), nullable=True),
        sa.Column("poll_interval_ms", sa.Integer(), nullable=False, server_default="30000"),
        sa.Column("schema_config", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_services_team_id", "services", ["team_id"])

    op.create_table(
        "dependencies",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("service_id", sa.String(36), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("canonical_name", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dependencies_service_id", "dependencies", ["service_id"])

    op.create_table(
        "dependency_aliases",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("alias", sa.Text(), nullable=False),
        sa.Column("canonical_name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("alias"),
    )

    op.create_table(
        "dependency_canonical_overrides",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("canonical_name", sa.Text(), nullable=False),
        sa.Column("team_id", sa.String(36), nullable=True),
        sa.Column("contact_override", sa.Text(), nullable=True),
        sa.Column("impact_override", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["updated_by"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_canonical_overrides_team_scoped",
        "dependency_canonical_overrides",
        ["team_id", "canonical_name"],
        unique=True,
        sqlite_where=sa.text("team_id IS NOT NULL"),
        postgresql_where=sa.text("team_id IS NOT NULL"),
    )

    op.create_table(
        "dependency_associations",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("dependency_id", sa.String(36), nullable=False),
        sa.Column("linked_service_id", sa.String(36), nullable=False),
        sa.Column("association_type", sa.String(32), nullable=False, server_default="other"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["dependency_id"], ["dependencies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["linked_service_id"], ["services.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "dependency_id", "linked_service_id", name="uq_association_dependency_target"
        ),
    )
    op.create_index(
        "ix_dependency_associations_dependency_id",
        "dependency_associations",
        ["dependency_id"],
    )


def downgrade() -> None:
    op.drop_table("dependency_associations")
    op.drop_table("dependency_canonical_overrides")
    op.drop_table("dependency_aliases")
    op.drop_table("dependencies")
    op.drop_table("services")
    op.drop_table("users")
    op.drop_table("teams")
