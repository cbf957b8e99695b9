"""Add manifest sync tables and manifest ownership columns.

Revision ID: 7e4b2f6c9d10
Revises: 3c1d9e0a7b21
Create Date: 2026-09-16 14:30:00

Creates tables for:
- team_manifest_config: per-team manifest URL, policy and last-run snapshot
- manifest_sync_history: one row per sync run
- drift_flags: manifest/catalog discrepancies awaiting review

Adds manifest ownership columns to services, aliases, canonical overrides
and associations. Batch mode keeps the downgrade working on SQLite.
"""

from alembic import op
import sqlalchemy as sa


revision = "7e4b2f6c9d10"
down_revision = "3c1d9e0a7b21"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("services") as batch:
        batch.add_column(sa.Column("manifest_key", sa.String(128), nullable=True))
        batch.add_column(
            sa.Column("manifest_managed", sa.Boolean(), nullable=False, server_default=sa.false())
        )
        batch.add_column(sa.Column("manifest_last_synced_values", sa.Text(), nullable=True))
    op.create_index(
        "ix_services_team_manifest_key",
        "services",
        ["team_id", "manifest_key"],
        unique=True,
        sqlite_where=sa.text("manifest_key IS NOT NULL"),
        postgresql_where=sa.text("manifest_key IS NOT NULL"),
    )

    with op.batch_alter_table("dependency_aliases") as batch:
        batch.add_column(sa.Column("manifest_team_id", sa.String(36), nullable=True))
        batch.create_foreign_key(
            "fk_dependency_aliases_manifest_team",
            "teams",
            ["manifest_team_id"],
            ["id"],
            ondelete="SET NULL",
        )

    with op.batch_alter_table("dependency_canonical_overrides") as batch:
        batch.add_column(
            sa.Column("manifest_managed", sa.Boolean(), nullable=False, server_default=sa.false())
        )

    with op.batch_alter_table("dependency_associations") as batch:
        batch.add_column(
            sa.Column("manifest_managed", sa.Boolean(), nullable=False, server_default=sa.false())
        )

    op.create_table(
        "team_manifest_config",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("team_id", sa.String(36), nullable=False),
        sa.Column("manifest_url", sa.Text(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sync_policy", sa.Text(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_status", sa.String(16), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("last_sync_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("team_id"),
    )

    op.create_table(
        "manifest_sync_history",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("team_id", sa.String(36), nullable=False),
        sa.Column("trigger_type", sa.String(16), nullable=False),
        sa.Column("triggered_by", sa.String(36), nullable=True),
        sa.Column("manifest_url", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("errors", sa.Text(), nullable=True),
        sa.Column("warnings", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["triggered_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_manifest_sync_history_team_created",
        "manifest_sync_history",
        ["team_id", "created_at"],
    )

    op.create_table(
        "drift_flags",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("team_id", sa.String(36), nullable=False),
        sa.Column("service_id", sa.String(36), nullable=False),
        sa.Column("drift_type", sa.String(32), nullable=False),
        sa.Column("field_name", sa.String(64), nullable=True),
        sa.Column("manifest_value", sa.Text(), nullable=True),
        sa.Column("current_value", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("first_detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(36), nullable=True),
        sa.Column("sync_history_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["resolved_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["sync_history_id"],
            ["manifest_sync_history.id"],
            ondelete="SET NULL",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_drift_flags_team_status", "drift_flags", ["team_id", "status"])
    op.create_index("ix_drift_flags_service_status", "drift_flags", ["service_id", "status"])
    op.create_index(
        "ix_drift_flags_last_detected", "drift_flags", ["team_id", "last_detected_at"]
    )


def downgrade() -> None:
    op.drop_table("drift_flags")
    op.drop_table("manifest_sync_history")
    op.drop_table("team_manifest_config")

    with op.batch_alter_table("dependency_associations") as batch:
        batch.drop_column("manifest_managed")
    with op.batch_alter_table("dependency_canonical_overrides") as batch:
        batch.drop_column("manifest_managed")
    with op.batch_alter_table("dependency_aliases") as batch:
        batch.drop_constraint("fk_dependency_aliases_manifest_team", type_="foreignkey")
        batch.drop_column("manifest_team_id")

    op.drop_index("ix_services_team_manifest_key", table_name="services")
    with op.batch_alter_table("services") as batch:
        batch.drop_column("manifest_last_synced_values")
        batch.drop_column("manifest_managed")
        batch.drop_column("manifest_key")
