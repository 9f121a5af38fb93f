from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
IdType = BigInteger().with_variant(Integer(), "sqlite")

INVOICE_TYPE_WEEKLY = "weekly"
INVOICE_TYPE_SUPPLEMENTAL = "supplemental"


class Base(DeclarativeBase):
    pass


class Store(Base):
    """Tenant record; owned by tenant management, read-only for the pipeline."""

    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    shop_name: Mapped[str | None] = mapped_column(String(255))
    api_token: Mapped[str | None] = mapped_column(Text)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255))
    platform_fee: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    subscription_status: Mapped[str | None] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class StoreSettings(Base):
    __tablename__ = "settings"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    store_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    addon_product_id: Mapped[str | None] = mapped_column(String(255))
    protection_product_id: Mapped[str | None] = mapped_column(String(255))


class Sale(Base):
    """Append-only ledger row: one per (store, order) that carried a protection item."""

    __tablename__ = "sales"
    __table_args__ = (
        UniqueConstraint("store_id", "order_id", name="uq_sales_store_order"),
        Index("ix_sales_store_week", "store_id", "week"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    store_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_number: Mapped[str | None] = mapped_column(String(64))
    protection_price: Mapped[int] = mapped_column(Integer, nullable=False)
    commission: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'USD'"))
    fx_rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False, server_default=text("1"))
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    week: Mapped[str] = mapped_column(String(8), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index(
            "uq_invoices_weekly_store_week",
            "store_id",
            "week",
            unique=True,
            postgresql_where=text("invoice_type = 'weekly'"),
            sqlite_where=text("invoice_type = 'weekly'"),
        ),
        Index("ix_invoices_store_week", "store_id", "week"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    store_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    week: Mapped[str] = mapped_column(String(8), nullable=False)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    sales_count: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_total: Mapped[int] = mapped_column(Integer, nullable=False)
    subscription_fee: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    invoice_type: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text(f"'{INVOICE_TYPE_WEEKLY}'")
    )
    original_invoice_id: Mapped[int | None] = mapped_column(IdType, ForeignKey("invoices.id"))
    external_invoice_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    hosted_invoice_url: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
