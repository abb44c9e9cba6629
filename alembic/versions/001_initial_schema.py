"""Initial schema: processing_jobs, credit_entries, user_accounts.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "processing_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("audio_ref", sa.String(500), nullable=True),
        sa.Column("duration_seconds", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("transcript", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("action_items", JSON(), nullable=True),
        sa.Column("key_topics", JSON(), nullable=True),
        sa.Column("sentiment", sa.String(50), nullable=True),
        sa.Column("error_note", sa.Text(), nullable=True),
        sa.Column("processing_model", sa.String(100), nullable=True),
        sa.Column("credits_consumed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("credits_held", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("progress", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("reprocessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("audio_released_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_processing_jobs_user_created", "processing_jobs", ["user_id", "created_at"])
    op.create_index("ix_processing_jobs_status_updated", "processing_jobs", ["status", "updated_at"])

    op.create_table(
        "credit_entries",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("job_id", UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_credit_entries_user_created", "credit_entries", ["user_id", "created_at"])

    op.create_table(
        "user_accounts",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("tier", sa.String(20), server_default=sa.text("'free'"), nullable=False),
        sa.Column("gemini_api_key", sa.String(500), nullable=True),
        sa.Column("openai_api_key", sa.String(500), nullable=True),
        sa.Column("groq_api_key", sa.String(500), nullable=True),
        sa.Column("selected_provider", sa.String(50), nullable=True),
        sa.Column("prefer_own_key", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("credits_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("user_accounts")
    op.drop_index("ix_credit_entries_user_created", table_name="credit_entries")
    op.drop_table("credit_entries")
    op.drop_index("ix_processing_jobs_status_updated", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_user_created", table_name="processing_jobs")
    op.drop_table("processing_jobs")
