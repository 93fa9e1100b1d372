"""Pydantic schemas for API requests and responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .constants import BillingCycle, CapacityKind, SubscriptionStatus, TenantTier


class PlanIn(BaseModel):
    id: str = Field(min_length=2, max_length=80, pattern=r"^[a-z0-9]+(?:[-_][a-z0-9]+)*$")
    name: str | None = Field(default=None, max_length=200)
    billing_cycle: Literal["monthly", "annual"] = "monthly"
    base_price: float
    base_bed_count: int
    top_up_price_per_bed: float = 0
    max_beds_allowed: int | None = None
    allow_multiple_branches: bool = False
    branch_count: int = 1
    cost_per_branch: float = 0
    annual_discount_percent: float = 0
    trial_period_days: int = 0
    modules: dict[str, int | None] = Field(default_factory=dict)
    is_active: bool = True


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    billing_cycle: BillingCycle
    base_price: float
    base_bed_count: int
    top_up_price_per_bed: float
    max_beds_allowed: int | None
    allow_multiple_branches: bool
    branch_count: int
    cost_per_branch: float
    annual_discount_percent: float
    trial_period_days: int
    modules: dict[str, int | None]
    is_active: bool
    monthly_price: float = 0
    annual_price: float = 0


class CostBreakdownOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    billing_cycle: BillingCycle
    requested_beds: int
    requested_branches: int
    base_price: float
    extra_beds: int
    top_up_cost: float
    extra_branches: int
    branch_cost: float
    total_monthly: float
    total_annual: float
    effective_monthly: float
    savings_annual: float


class UsageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    beds_used: int
    branches_used: int


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None
    tenant_id: str
    plan_id: str | None
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    start_date: datetime
    end_date: datetime | None
    trial_end_date: datetime | None
    total_beds: int
    total_branches: int
    usage: UsageOut
    auto_renew: bool
    onboarding: bool
    custom_max_beds: int | None
    custom_max_branches: int | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    superseded_by_id: int | None
    version: int
    last_event: str | None
    updated_at: datetime | None
    days_remaining: int = 0
    renewal_date: datetime | None = None


class TrialRequest(BaseModel):
    plan_id: str
    onboarding: bool = False
    auto_renew: bool = False


class PurchaseRequest(BaseModel):
    plan_id: str
    beds: int | None = None
    branches: int | None = None
    auto_renew: bool = True
    version: int | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    version: int | None = None


class CancelOut(BaseModel):
    subscription: SubscriptionOut
    outbound: dict[str, str]


class ChangePlanRequest(BaseModel):
    plan_id: str
    beds: int | None = None
    branches: int | None = None
    version: int | None = None


class PlanChangeOut(BaseModel):
    applied: bool
    superseded: SubscriptionOut | None
    current: SubscriptionOut


class TopUpRequest(BaseModel):
    kind: CapacityKind
    new_max: int = Field(ge=1)
    version: int | None = None


class TopUpQuoteOut(BaseModel):
    outbound: dict[str, int]
    additional_monthly: float
    cost: CostBreakdownOut


class TopUpOut(BaseModel):
    subscription: SubscriptionOut
    outbound: dict[str, int]
    cost: CostBreakdownOut


class CapacityCheckRequest(BaseModel):
    kind: CapacityKind
    delta: int
    tier: TenantTier | None = None


class CapacityCheckOut(BaseModel):
    kind: CapacityKind
    tier: TenantTier
    outcome: str
    denial: str | None
    can_add: bool
    unlimited: bool
    limit: int | None
    used: int
    requested: int
    new_total: int
    remaining: int | None
    beds_needed: int
    approaching_limit: bool = False
    top_up: TopUpQuoteOut | None = None


class BulkUploadRequest(BaseModel):
    rooms: list[dict[str, Any]] = Field(min_length=1)


class BulkUploadOut(BaseModel):
    batch_beds: int
    batch_limit: int | None
    module_enabled: bool
    within_batch_limit: bool
    can_proceed: bool
    capacity: CapacityCheckOut


class UsageDeltaRequest(BaseModel):
    kind: CapacityKind
    delta: int


class ExpirySweepRequest(BaseModel):
    now: datetime | None = None
    paid_subscription_ids: list[int] = Field(default_factory=list)


class ExpirySweepOut(BaseModel):
    changed: list[SubscriptionOut]


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: int
    activity_type: str
    description: str | None
    payload: dict
    occurred_at: datetime


class HistoryOut(BaseModel):
    subscriptions: list[SubscriptionOut]
    activities: list[ActivityOut]
