"""Tiered cost calculation for bed and branch entitlements.

All functions are pure. No rounding is applied; formatting money for display
is left to the presentation layer.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .constants import BillingCycle
from .exceptions import InvalidArgument
from .plans import Plan

MONTHS_PER_YEAR = 12


@dataclass(frozen=True)
class CostBreakdown:
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

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["billing_cycle"] = self.billing_cycle.value
        return data


def _require_count(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{name} must be an integer.", context={name: value})
    if value < 0:
        raise InvalidArgument(f"{name} cannot be negative.", context={name: value})
    return value


def calculate_cost(
    plan: Plan,
    requested_bed_count: int,
    requested_branch_count: int = 1,
) -> CostBreakdown:
    """Itemize what ``plan`` costs at the requested bed and branch counts.

    The first branch is always covered by the base price. Branch pricing is
    ignored entirely for plans that do not allow multiple branches.
    """
    beds = _require_count("requested_bed_count", requested_bed_count)
    branches = _require_count("requested_branch_count", requested_branch_count)

    extra_beds = max(0, beds - plan.base_bed_count)
    top_up_cost = extra_beds * plan.top_up_price_per_bed

    extra_branches = 0
    branch_cost = 0
    if plan.allow_multiple_branches:
        extra_branches = max(0, branches - 1)
        branch_cost = extra_branches * plan.cost_per_branch

    total_monthly = plan.base_price + top_up_cost + branch_cost
    total_annual = total_monthly * MONTHS_PER_YEAR

    savings_annual = 0
    if plan.billing_cycle == BillingCycle.ANNUAL and plan.annual_discount_percent > 0:
        savings_annual = total_annual * plan.annual_discount_percent / 100
        total_annual -= savings_annual

    return CostBreakdown(
        billing_cycle=plan.billing_cycle,
        requested_beds=beds,
        requested_branches=branches,
        base_price=plan.base_price,
        extra_beds=extra_beds,
        top_up_cost=top_up_cost,
        extra_branches=extra_branches,
        branch_cost=branch_cost,
        total_monthly=total_monthly,
        total_annual=total_annual,
        effective_monthly=total_annual / MONTHS_PER_YEAR,
        savings_annual=savings_annual,
    )


def monthly_price(plan: Plan) -> float:
    """List price per month at the plan's base entitlement, after any annual discount."""
    return calculate_cost(plan, plan.base_bed_count, 1).effective_monthly


def annual_price(plan: Plan) -> float:
    return calculate_cost(plan, plan.base_bed_count, 1).total_annual
