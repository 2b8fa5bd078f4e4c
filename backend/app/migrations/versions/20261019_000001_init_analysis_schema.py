"""init analysis schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organization_units",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("short_name", sa.String(length=64)),
        sa.Column("description", sa.Text()),
        sa.Column("analysis_context", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "unit_analysis_instructions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "unit_id",
            sa.BigInteger(),
            sa.ForeignKey("organization_units.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("instruction", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_unit_instructions_unit", "unit_analysis_instructions", ["unit_id"])

    op.create_table(
        "analysis_categories",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "unit_id",
            sa.BigInteger(),
            sa.ForeignKey("organization_units.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("keywords", postgresql.JSONB()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_analysis_categories_unit", "analysis_categories", ["unit_id"])

    op.create_table(
        "raw_feedback_inputs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "target_unit_id",
            sa.BigInteger(),
            sa.ForeignKey("organization_units.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("survey_id", sa.BigInteger()),
        sa.Column("raw_text", sa.Text(), nullable=False),
        sa.Column("source_column", sa.String(length=255)),
        sa.Column("is_quantitative", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("requires_analysis", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "idx_raw_inputs_unit_survey_id",
        "raw_feedback_inputs",
        ["target_unit_id", "survey_id", "id"],
    )

    op.create_table(
        "feedback_segments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "raw_input_id",
            sa.BigInteger(),
            sa.ForeignKey("raw_feedback_inputs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("segment_text", sa.Text(), nullable=False),
        sa.Column("sentiment", sa.String(length=16), nullable=False),
        sa.Column(
            "category_id",
            sa.BigInteger(),
            sa.ForeignKey("analysis_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("related_unit_ids", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_suggestion", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_placeholder", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "sentiment IN ('Positive', 'Neutral', 'Negative')",
            name="chk_feedback_segments_sentiment",
        ),
    )
    op.create_index("idx_feedback_segments_raw_input", "feedback_segments", ["raw_input_id"])

    op.create_table(
        "analysis_jobs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "unit_id",
            sa.BigInteger(),
            sa.ForeignKey("organization_units.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("survey_id", sa.BigInteger()),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("processed_items", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_batches", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_scanned_id", sa.BigInteger()),
        sa.Column("logs", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("error", sa.Text()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'STOPPED', 'COMPLETED', 'FAILED')",
            name="chk_analysis_jobs_status",
        ),
    )
    op.create_index("idx_analysis_jobs_scope_status", "analysis_jobs", ["unit_id", "survey_id", "status"])
    op.execute(
        "CREATE UNIQUE INDEX idx_analysis_jobs_one_active ON analysis_jobs "
        "(unit_id, COALESCE(survey_id, 0)) WHERE status IN ('PENDING', 'PROCESSING')"
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("new_value", postgresql.JSONB()),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("metadata", postgresql.JSONB()),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("idx_audit_logs_action_ts", "audit_logs", ["action", "timestamp"])


def downgrade() -> None:
    op.drop_index("idx_audit_logs_action_ts", table_name="audit_logs")
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.execute("DROP INDEX IF EXISTS idx_analysis_jobs_one_active")
    op.drop_index("idx_analysis_jobs_scope_status", table_name="analysis_jobs")
    op.drop_table("analysis_jobs")
    op.drop_index("idx_feedback_segments_raw_input", table_name="feedback_segments")
    op.drop_table("feedback_segments")
    op.drop_index("idx_raw_inputs_unit_survey_id", table_name="raw_feedback_inputs")
    op.drop_table("raw_feedback_inputs")
    op.drop_index("idx_analysis_categories_unit", table_name="analysis_categories")
    op.drop_table("analysis_categories")
    op.drop_index("idx_unit_instructions_unit", table_name="unit_analysis_instructions")
    op.drop_table("unit_analysis_instructions")
    op.drop_table("organization_units")
