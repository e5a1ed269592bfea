"""002 - Sample ids for collected lab test items

Revision ID: 002_sample_ids
Revises: 001_lab_order_ledger
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa


revision = "002_sample_ids"
down_revision = "001_lab_order_ledger"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Daily sequences behind SMP-YYYYMMDD-NNNN
    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("prefix", sa.String(20), nullable=False),
        sa.Column("period", sa.String(8), nullable=False),
        sa.Column("last_number", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id", name="pk_document_sequences"),
        sa.UniqueConstraint("prefix", "period", name="uq_document_sequence_prefix_period"),
    )

    # Assigned when the item enters sample_collected; NULL until then
    op.add_column(
        "lab_test_order_items",
        sa.Column("sample_id", sa.String(30), nullable=True),
    )
    op.create_index(
        "ix_lab_test_order_items_sample_id", "lab_test_order_items", ["sample_id"], unique=True
    )


def downgrade() -> None:
    op.drop_index("ix_lab_test_order_items_sample_id", table_name="lab_test_order_items")
    op.drop_column("lab_test_order_items", "sample_id")
    op.drop_table("document_sequences")
