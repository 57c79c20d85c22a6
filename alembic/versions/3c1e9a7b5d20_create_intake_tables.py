"""create intake tables

Revision ID: 3c1e9a7b5d20
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c1e9a7b5d20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "expenses_expense_record",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(length=200), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("message_id", sa.String(length=200), nullable=False),
        sa.Column("source_channel", sa.String(length=50), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("vendor", sa.String(length=200), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("validation_status", sa.String(length=20), nullable=False),
        sa.Column("issues", sa.JSON(), nullable=False),
        sa.Column("provenance_json", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_expenses_expense_record"),
        sa.UniqueConstraint(
            "user_id", "fingerprint", name="uq_expense_record_user_fingerprint"
        ),
    )
    op.create_index(
        "ix_expenses_expense_record_user_id", "expenses_expense_record", ["user_id"]
    )
    op.create_index(
        "ix_expenses_expense_record_fingerprint", "expenses_expense_record", ["fingerprint"]
    )
    op.create_index(
        "ix_expenses_expense_record_validation_status",
        "expenses_expense_record",
        ["validation_status"],
    )

    op.create_table(
        "deadletter_entry",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=200), nullable=False),
        sa.Column("message_id", sa.String(length=200), nullable=False),
        sa.Column("stage", sa.String(length=20), nullable=False),
        sa.Column("raw_message_json", sa.JSON(), nullable=False),
        sa.Column("draft_json", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=False),
        sa.Column("error_history_json", sa.JSON(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution", sa.String(length=50), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_deadletter_entry"),
    )
    op.create_index("ix_deadletter_entry_fingerprint", "deadletter_entry", ["fingerprint"])
    op.create_index("ix_deadletter_entry_user_id", "deadletter_entry", ["user_id"])
    op.create_index("ix_deadletter_entry_stage", "deadletter_entry", ["stage"])
    op.create_index("ix_deadletter_entry_resolved_at", "deadletter_entry", ["resolved_at"])

    op.create_table(
        "extraction_candidate_cache",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("template_id", sa.String(length=64), nullable=False),
        sa.Column("backend_id", sa.String(length=100), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False),
        sa.Column("candidate_json", sa.JSON(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_extraction_candidate_cache"),
    )
    op.create_index(
        "ix_extraction_candidate_cache_fingerprint",
        "extraction_candidate_cache",
        ["fingerprint"],
        unique=True,
    )
    op.create_index(
        "ix_extraction_candidate_cache_expires_at", "extraction_candidate_cache", ["expires_at"]
    )
    op.create_index(
        "ix_extraction_candidate_cache_last_used_at",
        "extraction_candidate_cache",
        ["last_used_at"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_extraction_candidate_cache_last_used_at", table_name="extraction_candidate_cache"
    )
    op.drop_index(
        "ix_extraction_candidate_cache_expires_at", table_name="extraction_candidate_cache"
    )
    op.drop_index(
        "ix_extraction_candidate_cache_fingerprint", table_name="extraction_candidate_cache"
    )
    op.drop_table("extraction_candidate_cache")

    op.drop_index("ix_deadletter_entry_resolved_at", table_name="deadletter_entry")
    op.drop_index("ix_deadletter_entry_stage", table_name="deadletter_entry")
    op.drop_index("ix_deadletter_entry_user_id", table_name="deadletter_entry")
    op.drop_index("ix_deadletter_entry_fingerprint", table_name="deadletter_entry")
    op.drop_table("deadletter_entry")

    op.drop_index(
        "ix_expenses_expense_record_validation_status", table_name="expenses_expense_record"
    )
    op.drop_index("ix_expenses_expense_record_fingerprint", table_name="expenses_expense_record")
    op.drop_index("ix_expenses_expense_record_user_id", table_name="expenses_expense_record")
    op.drop_table("expenses_expense_record")
