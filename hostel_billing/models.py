"""SQLAlchemy models for plans, subscription records and their activity log."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PlanRow(Base):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    base_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    base_bed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    top_up_price_per_bed: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_beds_allowed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allow_multiple_branches: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    branch_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    cost_per_branch: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    annual_discount_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    trial_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    modules: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    subscriptions: Mapped[list["SubscriptionRow"]] = relationship(back_populates="plan")


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    plan_id: Mapped[str | None] = mapped_column(ForeignKey("plans.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_beds: Mapped[int] = mapped_column(Integer, nullable=False)
    total_branches: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    beds_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    branches_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    onboarding: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    custom_max_beds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    custom_max_branches: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    superseded_by_id: Mapped[int | None] = mapped_column(ForeignKey("subscriptions.id"), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_event: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    plan: Mapped[PlanRow | None] = relationship(back_populates="subscriptions")
    activities: Mapped[list["SubscriptionActivity"]] = relationship(
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionActivity.id",
    )


class SubscriptionActivity(Base):
    __tablename__ = "subscription_activities"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    subscription_id: Mapped[int] = mapped_column(ForeignKey("subscriptions.id"), nullable=False, index=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    subscription: Mapped[SubscriptionRow] = relationship(back_populates="activities")
