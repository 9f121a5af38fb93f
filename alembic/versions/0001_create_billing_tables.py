"""Create stores, settings, sales and invoices tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_create_billing_tables"
down_revision = None
branch_labels = None
depends_on = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "stores",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("shop_domain", sa.String(length=255), nullable=False),
        sa.Column("shop_name", sa.String(length=255)),
        sa.Column("api_token", sa.Text()),
        sa.Column("stripe_customer_id", sa.String(length=255)),
        sa.Column("platform_fee", sa.Numeric(5, 2)),
        sa.Column("subscription_status", sa.String(length=32)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "settings",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column(
            "store_id",
            sa.String(length=36),
            sa.ForeignKey("stores.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("addon_product_id", sa.String(length=255)),
        sa.Column("protection_product_id", sa.String(length=255)),
    )

    op.create_table(
        "sales",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.String(length=36), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("order_number", sa.String(length=64)),
        sa.Column("protection_price", sa.Integer(), nullable=False),
        sa.Column("commission", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("fx_rate", sa.Numeric(18, 8), nullable=False, server_default=sa.text("1")),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("week", sa.String(length=8), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("store_id", "order_id", name="uq_sales_store_order"),
    )
    op.create_index("ix_sales_store_week", "sales", ["store_id", "week"])

    op.create_table(
        "invoices",
        sa.Column("id", ID_TYPE, primary_key=True, autoincrement=True),
        sa.Column("store_id", sa.String(length=36), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column("week", sa.String(length=8), nullable=False),
        sa.Column("week_start_date", sa.Date(), nullable=False),
        sa.Column("week_end_date", sa.Date(), nullable=False),
        sa.Column("sales_count", sa.Integer(), nullable=False),
        sa.Column("commission_total", sa.Integer(), nullable=False),
        sa.Column("subscription_fee", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("invoice_type", sa.String(length=16), nullable=False, server_default=sa.text("'weekly'")),
        sa.Column("original_invoice_id", ID_TYPE, sa.ForeignKey("invoices.id")),
        sa.Column("external_invoice_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("hosted_invoice_url", sa.Text()),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_invoices_store_week", "invoices", ["store_id", "week"])
    op.create_index(
        "uq_invoices_weekly_store_week",
        "invoices",
        ["store_id", "week"],
        unique=True,
        postgresql_where=sa.text("invoice_type = 'weekly'"),
        sqlite_where=sa.text("invoice_type = 'weekly'"),
    )


def downgrade() -> None:
    op.drop_index("uq_invoices_weekly_store_week", table_name="invoices")
    op.drop_index("ix_invoices_store_week", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_sales_store_week", table_name="sales")
    op.drop_table("sales")
    op.drop_table("settings")
    op.drop_table("stores")
