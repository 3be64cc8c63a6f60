"""Create connection, sync history, canonical record, metric, and business impact tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op as alembic_op  # type: ignore[import-untyped]

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(), nullable=nullable)


def upgrade() -> None:
    """Create every tenant-scoped table and its supporting indexes."""

    alembic_op.create_table(
        "connections",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("vendor", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("instance_url", sa.String(length=512), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        _timestamp("token_expires_at", nullable=True),
        sa.Column("oauth_metadata", sa.JSON(), nullable=True),
        sa.Column("sync_interval_minutes", sa.Integer(), nullable=False),
        sa.Column("resource_filters", sa.JSON(), nullable=True),
        sa.Column("query_filters", sa.JSON(), nullable=True),
        _timestamp("last_sync_at", nullable=True),
        _timestamp("last_successful_sync_at", nullable=True),
        sa.Column("failed_sync_attempts", sa.Integer(), nullable=False),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("total_records_synced", sa.Integer(), nullable=False),
        sa.Column("requires_reauth", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("tenant_id", "vendor", "instance_url", name="uq_connection_instance"),
    )
    alembic_op.create_index("ix_connections_tenant_id", "connections", ["tenant_id"])
    alembic_op.create_index("ix_connections_vendor", "connections", ["vendor"])
    alembic_op.create_index("ix_connections_is_active", "connections", ["is_active"])

    alembic_op.create_table(
        "sync_history",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "connection_id",
            sa.String(length=36),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sync_type", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _timestamp("started_at"),
        _timestamp("completed_at", nullable=True),
        sa.Column("records_processed", sa.Integer(), nullable=False),
        sa.Column("records_created", sa.Integer(), nullable=False),
        sa.Column("records_updated", sa.Integer(), nullable=False),
        sa.Column("records_skipped", sa.Integer(), nullable=False),
        sa.Column("entity_stats", sa.JSON(), nullable=True),
        _timestamp("cursor", nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
    )
    alembic_op.create_index("ix_sync_history_tenant_id", "sync_history", ["tenant_id"])
    alembic_op.create_index("ix_sync_history_connection_id", "sync_history", ["connection_id"])
    alembic_op.create_index("ix_sync_history_status", "sync_history", ["status"])

    alembic_op.create_table(
        "canonical_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "connection_id",
            sa.String(length=36),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        _timestamp("occurred_at"),
        _timestamp("source_updated_at", nullable=True),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("fields", sa.JSON(), nullable=False),
        _timestamp("last_synced_at"),
        sa.UniqueConstraint(
            "tenant_id",
            "connection_id",
            "entity_type",
            "external_id",
            name="uq_canonical_natural_key",
        ),
    )
    alembic_op.create_index("ix_canonical_records_tenant_id", "canonical_records", ["tenant_id"])
    alembic_op.create_index("ix_canonical_records_source", "canonical_records", ["source"])
    alembic_op.create_index(
        "ix_canonical_records_entity_type", "canonical_records", ["entity_type"]
    )
    alembic_op.create_index(
        "ix_canonical_records_occurred_at", "canonical_records", ["occurred_at"]
    )

    alembic_op.create_table(
        "metric_definitions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("metric_key", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("data_type", sa.String(length=32), nullable=False),
        sa.Column("aggregation_type", sa.String(length=16), nullable=False),
        sa.Column("source_types", sa.JSON(), nullable=False),
        sa.Column("calculation", sa.JSON(), nullable=False),
        sa.Column("thresholds", sa.JSON(), nullable=True),
        sa.Column("display_config", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_custom", sa.Boolean(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("tenant_id", "metric_key", name="uq_metric_key"),
    )
    alembic_op.create_index(
        "ix_metric_definitions_tenant_id", "metric_definitions", ["tenant_id"]
    )
    alembic_op.create_index("ix_metric_definitions_category", "metric_definitions", ["category"])

    alembic_op.create_table(
        "metric_values",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "metric_id",
            sa.String(length=36),
            sa.ForeignKey("metric_definitions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("value", sa.Float(), nullable=False),
        _timestamp("period_start"),
        _timestamp("period_end"),
        sa.Column("granularity", sa.String(length=16), nullable=False),
        sa.Column("breakdown", sa.JSON(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("calculation_metadata", sa.JSON(), nullable=True),
        sa.Column("comparison_data", sa.JSON(), nullable=True),
        _timestamp("calculated_at"),
        sa.UniqueConstraint(
            "tenant_id",
            "metric_id",
            "period_start",
            "period_end",
            "granularity",
            name="uq_metric_value_period",
        ),
    )
    alembic_op.create_index("ix_metric_values_tenant_id", "metric_values", ["tenant_id"])
    alembic_op.create_index("ix_metric_values_period_start", "metric_values", ["period_start"])

    alembic_op.create_table(
        "business_impacts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("source_id", sa.String(length=255), nullable=False),
        sa.Column("impact_type", sa.String(length=32), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("estimated_revenue_loss", sa.Float(), nullable=False),
        sa.Column("actual_revenue_loss", sa.Float(), nullable=True),
        sa.Column("customers_affected", sa.Integer(), nullable=True),
        sa.Column("users_affected", sa.Integer(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        _timestamp("impact_date"),
        _timestamp("resolved_date", nullable=True),
        sa.Column("revenue_mapping", sa.JSON(), nullable=True),
        sa.Column("loss_estimation", sa.JSON(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("is_validated", sa.Boolean(), nullable=False),
        _timestamp("validated_at", nullable=True),
        sa.Column("validated_by", sa.String(length=255), nullable=True),
        sa.Column("validation_notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    alembic_op.create_index("ix_business_impacts_tenant_id", "business_impacts", ["tenant_id"])
    alembic_op.create_index(
        "ix_business_impacts_impact_date", "business_impacts", ["impact_date"]
    )


def downgrade() -> None:
    """Drop every table in reverse dependency order."""

    alembic_op.drop_index("ix_business_impacts_impact_date", table_name="business_impacts")
    alembic_op.drop_index("ix_business_impacts_tenant_id", table_name="business_impacts")
    alembic_op.drop_table("business_impacts")
    alembic_op.drop_index("ix_metric_values_period_start", table_name="metric_values")
    alembic_op.drop_index("ix_metric_values_tenant_id", table_name="metric_values")
    alembic_op.drop_table("metric_values")
    alembic_op.drop_index("ix_metric_definitions_category", table_name="metric_definitions")
    alembic_op.drop_index("ix_metric_definitions_tenant_id", table_name="metric_definitions")
    alembic_op.drop_table("metric_definitions")
    alembic_op.drop_index("ix_canonical_records_occurred_at", table_name="canonical_records")
    alembic_op.drop_index("ix_canonical_records_entity_type", table_name="canonical_records")
    alembic_op.drop_index("ix_canonical_records_source", table_name="canonical_records")
    alembic_op.drop_index("ix_canonical_records_tenant_id", table_name="canonical_records")
    alembic_op.drop_table("canonical_records")
    alembic_op.drop_index("ix_sync_history_status", table_name="sync_history")
    alembic_op.drop_index("ix_sync_history_connection_id", table_name="sync_history")
    alembic_op.drop_index("ix_sync_history_tenant_id", table_name="sync_history")
    alembic_op.drop_table("sync_history")
    alembic_op.drop_index("ix_connections_is_active", table_name="connections")
    alembic_op.drop_index("ix_connections_vendor", table_name="connections")
    alembic_op.drop_index("ix_connections_tenant_id", table_name="connections")
    alembic_op.drop_table("connections")
