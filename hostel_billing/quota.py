"""Capacity decisions for bed and branch consuming actions.

Nothing here raises for an ordinary denial: a request that would exceed the
entitlement comes back with ``outcome == QuotaOutcome.CAPACITY_EXCEEDED`` and
the tenant tier echoed so the caller can pick the right upgrade flow.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .constants import (
    BULK_UPLOAD_MODULE,
    DEFAULT_APPROACHING_THRESHOLD,
    DENIAL_BY_TIER,
    UNLIMITED,
    CapacityKind,
    DenialReason,
    QuotaOutcome,
    SubscriptionStatus,
    TenantTier,
)
from .exceptions import InvalidArgument
from .logging import get_logger
from .plans import Plan, module_limit, plan_has_module
from .pricing import CostBreakdown, calculate_cost
from .records import EntitlementIncrease, SubscriptionRecord

logger = get_logger(__name__)

ROOM_BED_KEYS = ("bedNumber", "beds", "numberOfBeds")


@dataclass(frozen=True)
class QuotaCheckResult:
    kind: CapacityKind
    tier: TenantTier
    can_add: bool
    limit: float
    used: int
    requested: int
    new_total: int
    remaining: float
    beds_needed: int

    @property
    def unlimited(self) -> bool:
        return math.isinf(self.limit)

    @property
    def exceeded(self) -> bool:
        return not self.can_add

    @property
    def outcome(self) -> QuotaOutcome:
        return QuotaOutcome.ALLOWED if self.can_add else QuotaOutcome.CAPACITY_EXCEEDED

    @property
    def denial(self) -> DenialReason | None:
        if self.can_add:
            return None
        return DENIAL_BY_TIER[self.tier]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "tier": self.tier.value,
            "outcome": self.outcome.value,
            "denial": self.denial.value if self.denial else None,
            "can_add": self.can_add,
            "unlimited": self.unlimited,
            "limit": None if self.unlimited else int(self.limit),
            "used": self.used,
            "requested": self.requested,
            "new_total": self.new_total,
            "remaining": None if self.unlimited else int(self.remaining),
            "beds_needed": self.beds_needed,
        }


@dataclass(frozen=True)
class TopUpQuote:
    increase: EntitlementIncrease
    cost: CostBreakdown
    current_cost: CostBreakdown

    @property
    def additional_monthly(self) -> float:
        return self.cost.total_monthly - self.current_cost.total_monthly

    def to_payload(self) -> dict[str, int]:
        return self.increase.to_payload()


@dataclass(frozen=True)
class BulkUploadCheck:
    batch_beds: int
    batch_limit: int | None
    module_enabled: bool
    capacity: QuotaCheckResult

    @property
    def within_batch_limit(self) -> bool:
        return self.batch_limit is None or self.batch_beds <= self.batch_limit

    @property
    def can_proceed(self) -> bool:
        return self.module_enabled and self.within_batch_limit and self.capacity.can_add


def coerce_kind(kind: CapacityKind | str) -> CapacityKind:
    try:
        return CapacityKind(kind)
    except ValueError:
        raise InvalidArgument(
            f"Unknown capacity kind {kind!r}.",
            context={"allowed": [k.value for k in CapacityKind]},
        ) from None


def coerce_tier(tier: TenantTier | str) -> TenantTier:
    try:
        return TenantTier(tier)
    except ValueError:
        raise InvalidArgument(
            f"Unknown tenant tier {tier!r}.",
            context={"allowed": [t.value for t in TenantTier]},
        ) from None


def is_onboarding(subscription: SubscriptionRecord | None) -> bool:
    """True while a tenant builds out its property before committing to a plan."""
    if subscription is None or subscription.plan_id is None:
        return True
    return subscription.status == SubscriptionStatus.TRIAL and subscription.onboarding


def effective_limit(subscription: SubscriptionRecord | None, kind: CapacityKind) -> float:
    if is_onboarding(subscription):
        return UNLIMITED
    custom = subscription.custom_cap(kind)
    if custom is not None:
        return custom
    return subscription.entitlement(kind)


def derive_tenant_tier(subscription: SubscriptionRecord | None, plan: Plan | None) -> TenantTier:
    """Single place that classifies a tenant for quota-exceeded flows."""
    if subscription is None or plan is None or subscription.status == SubscriptionStatus.TRIAL:
        return TenantTier.TRIAL
    if plan.base_price == 0:
        return TenantTier.FREE
    return TenantTier.PAID


def check_capacity(
    subscription: SubscriptionRecord | None,
    kind: CapacityKind | str,
    delta: int,
    tier: TenantTier | str,
) -> QuotaCheckResult:
    kind = coerce_kind(kind)
    tier = coerce_tier(tier)
    if isinstance(delta, bool) or not isinstance(delta, int) or delta < 0:
        raise InvalidArgument("delta must be a non-negative integer.", context={"delta": delta})

    used = subscription.usage.get(kind) if subscription is not None else 0
    new_total = used + delta

    if is_onboarding(subscription):
        return QuotaCheckResult(
            kind=kind,
            tier=tier,
            can_add=True,
            limit=UNLIMITED,
            used=used,
            requested=delta,
            new_total=new_total,
            remaining=UNLIMITED,
            beds_needed=0,
        )

    limit = effective_limit(subscription, kind)
    exceeded = delta > 0 and new_total > limit
    result = QuotaCheckResult(
        kind=kind,
        tier=tier,
        can_add=not exceeded,
        limit=limit,
        used=used,
        requested=delta,
        new_total=new_total,
        remaining=max(0, limit - used),
        beds_needed=new_total - limit if exceeded else 0,
    )
    if exceeded:
        logger.info(
            "capacity_exceeded",
            tenant_id=subscription.tenant_id,
            kind=kind.value,
            tier=tier.value,
            limit=limit,
            used=used,
            requested=delta,
        )
    return result


def _can_reach(plan: Plan, kind: CapacityKind, new_max: int) -> bool:
    if kind == CapacityKind.BED:
        return plan.max_beds_allowed is None or new_max <= plan.max_beds_allowed
    return new_max <= plan.max_branches


def quote_overage(
    plan: Plan,
    subscription: SubscriptionRecord,
    result: QuotaCheckResult,
) -> TopUpQuote | None:
    """Price the top-up that would make ``result`` pass.

    ``None`` when nothing is needed, or when the plan cannot be topped up that
    far (single-branch plans, ``max_beds_allowed``); the caller then offers a
    plan change instead.
    """
    if result.can_add or result.unlimited:
        return None

    additional = result.beds_needed
    new_max = subscription.entitlement(result.kind) + additional
    if not _can_reach(plan, result.kind, new_max):
        return None
    increase = EntitlementIncrease(kind=result.kind, additional=additional, new_max=new_max)

    current_cost = calculate_cost(plan, subscription.total_beds, subscription.total_branches)
    if result.kind == CapacityKind.BED:
        cost = calculate_cost(plan, new_max, subscription.total_branches)
    else:
        cost = calculate_cost(plan, subscription.total_beds, new_max)
    return TopUpQuote(increase=increase, cost=cost, current_cost=current_cost)


def usage_percentage(subscription: SubscriptionRecord | None, kind: CapacityKind | str) -> float:
    kind = coerce_kind(kind)
    limit = effective_limit(subscription, kind)
    if math.isinf(limit) or limit <= 0:
        return 0.0
    return subscription.usage.get(kind) * 100 / limit


def is_approaching_limit(
    subscription: SubscriptionRecord | None,
    kind: CapacityKind | str,
    threshold: float = DEFAULT_APPROACHING_THRESHOLD,
) -> bool:
    kind = coerce_kind(kind)
    limit = effective_limit(subscription, kind)
    if math.isinf(limit) or limit <= 0:
        return False
    return subscription.usage.get(kind) / limit >= threshold


def _room_beds(room: Mapping[str, Any]) -> int:
    for key in ROOM_BED_KEYS:
        value = room.get(key)
        if value in (None, ""):
            continue
        try:
            beds = int(value)
        except (TypeError, ValueError):
            continue
        if beds < 0:
            raise InvalidArgument("A room cannot have a negative bed count.", context={key: value})
        if beds:
            return beds
    return 0


def count_beds(rooms: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> int:
    """Total beds in a single room payload or a batch of them."""
    if isinstance(rooms, Mapping):
        return _room_beds(rooms)
    return sum(_room_beds(room) for room in rooms)


def check_bulk_upload(
    subscription: SubscriptionRecord | None,
    plan: Plan | None,
    rooms: Mapping[str, Any] | Iterable[Mapping[str, Any]],
    tier: TenantTier | str,
    default_batch_limit: int | None = None,
) -> BulkUploadCheck:
    """Per-batch limit check layered on top of bed capacity."""
    batch_beds = count_beds(rooms)
    capacity = check_capacity(subscription, CapacityKind.BED, batch_beds, tier)

    if plan is None or is_onboarding(subscription):
        return BulkUploadCheck(
            batch_beds=batch_beds,
            batch_limit=None,
            module_enabled=True,
            capacity=capacity,
        )

    enabled = plan_has_module(plan, BULK_UPLOAD_MODULE)
    batch_limit = module_limit(plan, BULK_UPLOAD_MODULE) if enabled else None
    if enabled and batch_limit is None:
        batch_limit = default_batch_limit
    return BulkUploadCheck(
        batch_beds=batch_beds,
        batch_limit=batch_limit,
        module_enabled=enabled,
        capacity=capacity,
    )
