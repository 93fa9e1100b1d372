"""Subscription and usage records handed to the billing core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from .constants import BillingCycle, CapacityKind, SubscriptionStatus, SUPERSEDED_STATUSES


@dataclass(frozen=True)
class Usage:
    beds_used: int = 0
    branches_used: int = 0

    def get(self, kind: CapacityKind) -> int:
        if kind == CapacityKind.BED:
            return self.beds_used
        return self.branches_used


@dataclass(frozen=True)
class SubscriptionRecord:
    """One tenant's subscription at a point in time.

    ``total_beds``/``total_branches`` are the purchased entitlement, not plan
    defaults. ``version`` increments on every lifecycle transition; usage
    counter changes do not touch it.
    """

    tenant_id: str
    plan_id: str | None
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    start_date: datetime
    total_beds: int
    total_branches: int = 1
    end_date: datetime | None = None
    trial_end_date: datetime | None = None
    usage: Usage = field(default_factory=Usage)
    auto_renew: bool = True
    onboarding: bool = False
    custom_max_beds: int | None = None
    custom_max_branches: int | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    superseded_by_id: int | None = None
    id: int | None = None
    version: int = 1
    last_event: str | None = None
    updated_at: datetime | None = None

    def entitlement(self, kind: CapacityKind) -> int:
        if kind == CapacityKind.BED:
            return self.total_beds
        return self.total_branches

    def custom_cap(self, kind: CapacityKind) -> int | None:
        if kind == CapacityKind.BED:
            return self.custom_max_beds
        return self.custom_max_branches

    @property
    def is_superseded(self) -> bool:
        return self.status in SUPERSEDED_STATUSES


@dataclass(frozen=True)
class EntitlementIncrease:
    """Body for the external "increase entitlement" endpoint."""

    kind: CapacityKind
    additional: int
    new_max: int

    def to_payload(self) -> dict[str, int]:
        if self.kind == CapacityKind.BED:
            return {"additionalBeds": self.additional, "newMaxBeds": self.new_max}
        return {"additionalBranches": self.additional, "newMaxBranches": self.new_max}
