"""initial crm schema: users, audit events, customers, follow-ups, payments

Revision ID: 3a7c9e1b2d40
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "3a7c9e1b2d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("username", sa.String(length=150), nullable=False),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="employee"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
            sa.UniqueConstraint("username", name="uq_users_username"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_username", sa.String(length=150), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
        )
        op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])
        op.create_index("idx_audit_events_action", "audit_events", ["action"])

    if "customers" not in existing_tables:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("nickname", sa.String(length=255), nullable=False),
            sa.Column("contact", sa.String(length=255), nullable=False),
            sa.Column("source", sa.String(length=64), nullable=False),
            sa.Column("intention", sa.String(length=16), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="communicating"),
            sa.Column("age", sa.Integer(), nullable=True),
            sa.Column("gender", sa.String(length=16), nullable=True),
            sa.Column("work_experience", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("owner", sa.String(length=150), nullable=False),
            sa.Column("real_name", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=64), nullable=True),
            sa.Column("target_company", sa.String(length=255), nullable=True),
            sa.Column("hourly_rate", sa.Numeric(12, 2), nullable=True),
            sa.Column("wallet_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("stage2_status", sa.String(length=32), nullable=True),
            sa.Column("interview_notice_time", sa.DateTime(timezone=False), nullable=True),
            sa.Column("last_payment_time", sa.DateTime(timezone=False), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
        )
        op.create_index("idx_customers_owner", "customers", ["owner"])
        op.create_index("idx_customers_status", "customers", ["status"])
        op.create_index("idx_customers_stage2_status", "customers", ["stage2_status"])
        op.create_index("idx_customers_created_at", "customers", ["created_at"])

    if "customer_follow_ups" not in existing_tables:
        op.create_table(
            "customer_follow_ups",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("author", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
        )
        op.create_index("idx_customer_follow_ups_customer_id", "customer_follow_ups", ["customer_id", "id"])

    if "payments" not in existing_tables:
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("payment_name", sa.String(length=255), nullable=True),
            sa.Column("payment_time", sa.DateTime(timezone=False), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp()),
        )
        op.create_index("idx_payments_customer_id", "payments", ["customer_id", "payment_time"])


def downgrade() -> None:
    op.drop_index("idx_payments_customer_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("idx_customer_follow_ups_customer_id", table_name="customer_follow_ups")
    op.drop_table("customer_follow_ups")
    for ix in ("idx_customers_created_at", "idx_customers_stage2_status", "idx_customers_status", "idx_customers_owner"):
        op.drop_index(ix, table_name="customers")
    op.drop_table("customers")
    op.drop_index("idx_audit_events_action", table_name="audit_events")
    op.drop_index("idx_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("users")
