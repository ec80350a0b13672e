"""SQLAlchemy ORM models for the audit database.

Three append-only tables: one row per order placement attempt, one row per
redemption attempt, and one row per structured strategy event (skips,
transitions, fills, ledger decisions) with the full event as JSON.
"""

from sqlalchemy import JSON, Boolean, Float, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base class for all audit ORM models."""


class OrderAttemptRow(Base):
    """One order placement attempt and its classified outcome.

    Prices and sizes are stored as strings so Decimal values round-trip
    exactly.

    """

    __tablename__ = "order_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[float] = mapped_column(Float, index=True)
    token_id: Mapped[str] = mapped_column(String, index=True)
    side: Mapped[str] = mapped_column(String)
    price: Mapped[str] = mapped_column(String)
    size: Mapped[str] = mapped_column(String)
    order_type: Mapped[str] = mapped_column(String)
    success: Mapped[bool] = mapped_column(Boolean)
    order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    fill_status: Mapped[str] = mapped_column(String)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    error: Mapped[str] = mapped_column(String, default="")


class ClaimAttemptRow(Base):
    """One redemption attempt for a settlement condition."""

    __tablename__ = "claim_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[float] = mapped_column(Float, index=True)
    condition_id: Mapped[str] = mapped_column(String, index=True)
    wallet: Mapped[str] = mapped_column(String)
    value_usd: Mapped[str] = mapped_column(String)
    success: Mapped[bool] = mapped_column(Boolean)
    tx_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    payout_usd: Mapped[str] = mapped_column(String)
    error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    error: Mapped[str] = mapped_column(String, default="")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (Index("ix_claim_attempts_condition_success", "condition_id", "success"),)


class StrategyEventRow(Base):
    """A structured strategy or ledger event."""

    __tablename__ = "strategy_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    market_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    asset: Mapped[str | None] = mapped_column(String, nullable=True)
    ts: Mapped[float] = mapped_column(Float)
    payload: Mapped[dict[str, object]] = mapped_column(JSON)

    __table_args__ = (Index("ix_strategy_events_market_ts", "market_id", "ts"),)
