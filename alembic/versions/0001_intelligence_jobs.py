"""intelligence jobs and deal cache

Revision ID: 0001_intelligence_jobs
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


revision = "0001_intelligence_jobs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- intelligence_jobs ---
    op.create_table(
        "intelligence_jobs",
        sa.Column("job_id", UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String, nullable=False),
        sa.Column("entity_id", sa.String, nullable=False),
        sa.Column("entity_name", sa.String, nullable=False),
        sa.Column("status", sa.String, nullable=False, server_default="pending"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("previous_job_id", UUID(as_uuid=True), nullable=True),
        sa.Column("analysis_id", sa.String, nullable=False),
        sa.Column("result", JSONB, nullable=True),
        sa.Column("result_summary", JSONB, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("stats", JSONB, nullable=True),
        sa.Column("logs", JSONB, nullable=False, server_default="[]"),
        sa.Column("history", JSONB, nullable=False, server_default="[]"),
        sa.Column("change_detection", JSONB, nullable=True),
        sa.Column("user_id", sa.String, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "entity_type IN ('company', 'contact', 'deal')",
            name="ck_intelligence_jobs_entity_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'complete', 'error', 'cancelled')",
            name="ck_intelligence_jobs_status",
        ),
    )
    op.create_index("ix_intelligence_jobs_status", "intelligence_jobs", ["status"])
    op.create_index(
        "ix_intelligence_jobs_entity", "intelligence_jobs", ["entity_type", "entity_id"]
    )
    op.create_index(
        "ix_intelligence_jobs_status_started",
        "intelligence_jobs",
        ["status", "started_at"],
    )

    # --- deals ---
    op.create_table(
        "deals",
        sa.Column("hubspot_id", sa.String, primary_key=True, nullable=False),
        sa.Column("dealname", sa.String, nullable=True),
        sa.Column("amount", sa.Float, nullable=True),
        sa.Column("dealstage", sa.String, nullable=True),
        sa.Column("pipeline", sa.String, nullable=True),
        sa.Column("dealtype", sa.String, nullable=True),
        sa.Column("closedate", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_closed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_won", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_lost", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("company_ids", JSONB, nullable=False, server_default="[]"),
        sa.Column("contact_ids", JSONB, nullable=False, server_default="[]"),
        sa.Column("properties", JSONB, nullable=True),
        sa.Column("last_activity_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("deals")
    op.drop_index("ix_intelligence_jobs_status_started", table_name="intelligence_jobs")
    op.drop_index("ix_intelligence_jobs_entity", table_name="intelligence_jobs")
    op.drop_index("ix_intelligence_jobs_status", table_name="intelligence_jobs")
    op.drop_table("intelligence_jobs")
