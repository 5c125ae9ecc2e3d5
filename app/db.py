from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text,
                        UniqueConstraint, create_engine)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


class PromoterRow(Base):
    __tablename__ = "promoters"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    transfer_destination_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # soft-deactivate only, promoters with payouts are never deleted
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class DiscountCodeRow(Base):
    __tablename__ = "discount_codes"
    __table_args__ = (UniqueConstraint("merchant_id", "code", name="uq_discount_codes_merchant_code"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    code: Mapped[str] = mapped_column(String(128), nullable=False)
    promoter_id: Mapped[str | None] = mapped_column(ForeignKey("promoters.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MerchantPolicyRow(Base):
    __tablename__ = "merchant_payout_policies"

    merchant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    auto_payout: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    minimum_payout_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    calculation_base: Mapped[str] = mapped_column(String(32), nullable=False)


class PayoutRow(Base):
    """One commission line per (merchant, order, discount code)."""

    __tablename__ = "payout_records"
    __table_args__ = (
        UniqueConstraint("merchant_id", "order_id", "discount_code", name="uq_payout_records_order_code"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    promoter_id: Mapped[str] = mapped_column(ForeignKey("promoters.id"), index=True, nullable=False)
    order_id: Mapped[str] = mapped_column(String(128), nullable=False)
    discount_code: Mapped[str] = mapped_column(String(128), nullable=False)

    # snapshot at calculation time, amounts in minor units
    original_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discounted_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    commission_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    calculation_base: Mapped[str] = mapped_column(String(32), nullable=False)

    # PENDING -> PROCESSING -> COMPLETED | FAILED, FAILED -> PROCESSING
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # start of the latest attempt; a PROCESSING row older than the stale threshold can be retried
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def make_engine(database_url: str) -> Engine:
    """SQLAlchemy engine for a DATABASE_URL; in-memory SQLite shares one connection."""
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)
