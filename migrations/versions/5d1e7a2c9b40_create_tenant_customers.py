"""create businesses, tenant_customers, dependent tables and audit_events

Revision ID: 5d1e7a2c9b40
Revises:
Create Date: 2026-10-19 09:12:44.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5d1e7a2c9b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


DEPENDENT_TABLES = (
    ("bookings", sa.Column("starts_at", sa.DateTime(), nullable=True)),
    ("orders", sa.Column("order_number", sa.String(64), nullable=True)),
    ("invoices", sa.Column("invoice_number", sa.String(64), nullable=True)),
    ("loyalty_transactions", sa.Column("points", sa.Integer(), nullable=False, server_default="0")),
    ("customer_subscriptions", sa.Column("status", sa.String(32), nullable=True)),
    ("rental_bookings", sa.Column("starts_at", sa.DateTime(), nullable=True)),
)


def upgrade() -> None:
    """Create the identity schema (idempotent)."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "businesses" not in existing_tables:
        op.create_table(
            "businesses",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "tenant_customers" not in existing_tables:
        op.create_table(
            "tenant_customers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("business_id", sa.Integer(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("phone", sa.String(64), nullable=True),
            sa.Column("phone_key", sa.String(32), nullable=False, server_default=""),
            sa.Column("first_name", sa.Text(), nullable=True),
            sa.Column("last_name", sa.Text(), nullable=True),
            sa.Column("phone_opt_in", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("phone_opt_in_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("business_id", "email", name="uq_tenant_customers_business_email"),
        )
        op.create_index(
            "idx_tenant_customers_business_phone_key",
            "tenant_customers",
            ["business_id", "phone_key", "created_at"],
        )
        op.create_index("idx_tenant_customers_business_user_id", "tenant_customers", ["business_id", "user_id"])

    for table, extra in DEPENDENT_TABLES:
        if table in existing_tables:
            continue
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("business_id", sa.Integer(), sa.ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False),
            sa.Column("tenant_customer_id", sa.Integer(), sa.ForeignKey("tenant_customers.id"), nullable=False),
            extra.copy(),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index(f"idx_{table}_tenant_customer_id", table, ["tenant_customer_id"])

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("business_id", sa.Integer(), sa.ForeignKey("businesses.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_account_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
        )
        op.create_index(
            "idx_audit_events_business_entity",
            "audit_events",
            ["business_id", "entity_type", "entity_id"],
        )


def downgrade() -> None:
    op.drop_index("idx_audit_events_business_entity", table_name="audit_events")
    op.drop_table("audit_events")

    for table, _extra in reversed(DEPENDENT_TABLES):
        op.drop_index(f"idx_{table}_tenant_customer_id", table_name=table)
        op.drop_table(table)

    op.drop_index("idx_tenant_customers_business_user_id", table_name="tenant_customers")
    op.drop_index("idx_tenant_customers_business_phone_key", table_name="tenant_customers")
    op.drop_table("tenant_customers")
    op.drop_table("businesses")
