"""Lab order ledger tables and default payment threshold

Revision ID: 001_lab_order_ledger
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_lab_order_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # Users (mirrored from the identity service)
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"], unique=False)

    # Patients
    op.create_table(
        "patients",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_patients"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_patients_user_id_users"),
    )
    op.create_index("ix_patients_user_id", "patients", ["user_id"], unique=True)

    # Lab test catalog
    op.create_table(
        "lab_tests",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_lab_tests"),
    )

    # System settings
    op.create_table(
        "system_settings",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("setting_key", sa.String(100), nullable=False),
        sa.Column("setting_value", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_by_id", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_system_settings"),
        sa.ForeignKeyConstraint(
            ["updated_by_id"],
            ["users.id"],
            name="fk_system_settings_updated_by_id_users",
            ondelete="SET NULL",
        ),
    )
    op.create_index(
        "ix_system_settings_setting_key", "system_settings", ["setting_key"], unique=True
    )

    # Audit logs
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.BigInteger(), nullable=False),
        sa.Column("entity_identifier", sa.String(200), nullable=True),
        sa.Column("old_values", postgresql.JSONB(), nullable=True),
        sa.Column("new_values", postgresql.JSONB(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_audit_logs"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_audit_logs_user_id_users", ondelete="SET NULL"
        ),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("ix_audit_logs_entity_identifier", "audit_logs", ["entity_identifier"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    # Lab test orders
    op.create_table(
        "lab_test_orders",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("patient_id", sa.BigInteger(), nullable=False),
        sa.Column("doctor_id", sa.BigInteger(), nullable=True),
        sa.Column("appointment_id", sa.BigInteger(), nullable=True),
        sa.Column("order_total", sa.Numeric(10, 2), nullable=False, server_default="0.00"),
        sa.Column("order_paid", sa.Numeric(10, 2), nullable=False, server_default="0.00"),
        sa.Column("order_due", sa.Numeric(10, 2), nullable=False, server_default="0.00"),
        sa.Column(
            "refund_candidate_amount", sa.Numeric(10, 2), nullable=False, server_default="0.00"
        ),
        sa.Column("payment_threshold", sa.Numeric(3, 2), nullable=True),
        sa.Column("sample_allowed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("status", sa.String(40), nullable=False, server_default="ordered"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_lab_test_orders"),
        sa.ForeignKeyConstraint(
            ["patient_id"], ["patients.id"], name="fk_lab_test_orders_patient_id_patients"
        ),
        sa.ForeignKeyConstraint(
            ["created_by_id"], ["users.id"], name="fk_lab_test_orders_created_by_id_users"
        ),
        sa.CheckConstraint(
            "payment_threshold IS NULL OR (payment_threshold >= 0 AND payment_threshold <= 1)",
            name="ck_lab_test_orders_threshold_range",
        ),
        sa.CheckConstraint("order_due >= 0", name="ck_lab_test_orders_due_non_negative"),
    )
    op.create_index("ix_lab_test_orders_patient_id", "lab_test_orders", ["patient_id"])
    op.create_index("ix_lab_test_orders_order_due", "lab_test_orders", ["order_due"])
    op.create_index("ix_lab_test_orders_sample_allowed", "lab_test_orders", ["sample_allowed"])
    op.create_index("ix_lab_test_orders_status", "lab_test_orders", ["status"])

    # Lab test order items
    op.create_table(
        "lab_test_order_items",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.BigInteger(), nullable=False),
        sa.Column("lab_test_id", sa.BigInteger(), nullable=False),
        sa.Column("test_name", sa.String(200), nullable=False),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(40), nullable=False, server_default="ordered"),
        sa.Column("is_selected", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("sample_allowed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by_id", sa.BigInteger(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_lab_test_order_items"),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["lab_test_orders.id"],
            name="fk_lab_test_order_items_order_id_lab_test_orders",
        ),
        sa.ForeignKeyConstraint(
            ["lab_test_id"],
            ["lab_tests.id"],
            name="fk_lab_test_order_items_lab_test_id_lab_tests",
        ),
        sa.ForeignKeyConstraint(
            ["cancelled_by_id"],
            ["users.id"],
            name="fk_lab_test_order_items_cancelled_by_id_users",
        ),
        sa.CheckConstraint("unit_price >= 0", name="ck_lab_test_order_items_price_non_negative"),
    )
    op.create_index("ix_lab_test_order_items_order_id", "lab_test_order_items", ["order_id"])
    op.create_index(
        "ix_lab_test_order_items_lab_test_id", "lab_test_order_items", ["lab_test_id"]
    )
    op.create_index("ix_lab_test_order_items_status", "lab_test_order_items", ["status"])
    op.create_index(
        "ix_lab_test_order_items_is_selected", "lab_test_order_items", ["is_selected"]
    )
    op.create_index(
        "ix_lab_test_order_items_sample_allowed", "lab_test_order_items", ["sample_allowed"]
    )

    # Payment records
    op.create_table(
        "lab_order_payments",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_reference", sa.String(100), nullable=False),
        sa.Column("patient_id", sa.BigInteger(), nullable=False),
        sa.Column("applied_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("requested_target", postgresql.JSONB(), nullable=False),
        sa.Column("applied_to_orders", postgresql.JSONB(), nullable=True),
        sa.Column("transaction_id", sa.String(200), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.String(500), nullable=True),
        sa.Column("created_by_id", sa.BigInteger(), nullable=True),
        sa.Column("processed_by_admin_id", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_lab_order_payments"),
        sa.ForeignKeyConstraint(
            ["patient_id"], ["patients.id"], name="fk_lab_order_payments_patient_id_patients"
        ),
        sa.ForeignKeyConstraint(
            ["created_by_id"],
            ["users.id"],
            name="fk_lab_order_payments_created_by_id_users",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["processed_by_admin_id"],
            ["users.id"],
            name="fk_lab_order_payments_processed_by_admin_id_users",
            ondelete="SET NULL",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="ck_lab_order_payments_status",
        ),
        # Reversals are the only negative records
        sa.CheckConstraint(
            "applied_amount > 0 OR status = 'refunded'",
            name="ck_lab_order_payments_amount_sign",
        ),
    )
    op.create_index(
        "ix_lab_order_payments_payment_reference",
        "lab_order_payments",
        ["payment_reference"],
        unique=True,
    )
    op.create_index(
        "ix_lab_order_payments_transaction_id",
        "lab_order_payments",
        ["transaction_id"],
        unique=True,
    )
    op.create_index("ix_lab_order_payments_patient_id", "lab_order_payments", ["patient_id"])
    op.create_index("ix_lab_order_payments_status", "lab_order_payments", ["status"])
    op.create_index(
        "ix_lab_order_payments_created_by_id", "lab_order_payments", ["created_by_id"]
    )

    # Allocation ledger
    op.create_table(
        "lab_order_payment_allocations",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_id", sa.BigInteger(), nullable=False),
        sa.Column("order_item_id", sa.BigInteger(), nullable=False),
        sa.Column("order_id", sa.BigInteger(), nullable=False),
        sa.Column("applied_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_lab_order_payment_allocations"),
        sa.ForeignKeyConstraint(
            ["payment_id"],
            ["lab_order_payments.id"],
            name="fk_lab_order_payment_allocations_payment_id_lab_order_payments",
        ),
        sa.ForeignKeyConstraint(
            ["order_item_id"],
            ["lab_test_order_items.id"],
            name="fk_lab_order_payment_allocations_order_item_id_lab_test_order_items",
        ),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["lab_test_orders.id"],
            name="fk_lab_order_payment_allocations_order_id_lab_test_orders",
        ),
        sa.UniqueConstraint("payment_id", "order_item_id", name="uq_payment_item_allocation"),
        sa.CheckConstraint("applied_amount <> 0", name="ck_lab_order_payment_allocations_non_zero"),
    )
    op.create_index(
        "ix_lab_order_payment_allocations_payment_id",
        "lab_order_payment_allocations",
        ["payment_id"],
    )
    op.create_index(
        "ix_lab_order_payment_allocations_order_item_id",
        "lab_order_payment_allocations",
        ["order_item_id"],
    )
    op.create_index(
        "ix_lab_order_payment_allocations_order_id",
        "lab_order_payment_allocations",
        ["order_id"],
    )

    # Seed the global threshold
    op.execute(
        """
        INSERT INTO system_settings (setting_key, setting_value, description)
        VALUES (
            'lab_payment_threshold_default',
            '0.50',
            'Fraction of a lab test''s price required before its sample may be processed'
        )
        """
    )


def downgrade() -> None:
    op.drop_table("lab_order_payment_allocations")
    op.drop_table("lab_order_payments")
    op.drop_table("lab_test_order_items")
    op.drop_table("lab_test_orders")
    op.drop_table("audit_logs")
    op.drop_table("system_settings")
    op.drop_table("lab_tests")
    op.drop_table("patients")
    op.drop_table("users")
