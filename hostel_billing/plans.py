"""Plan catalog records and their validation rules."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .constants import BillingCycle, is_valid_module
from .exceptions import InvalidPlan


@dataclass(frozen=True)
class Plan:
    """Pricing rules of one subscription plan.

    ``max_beds_allowed`` of ``None`` means beds can be topped up without a cap.
    ``modules`` maps an enabled module name to its limit (``None`` = unlimited).
    """

    id: str
    billing_cycle: BillingCycle
    base_price: float
    base_bed_count: int
    top_up_price_per_bed: float = 0
    max_beds_allowed: int | None = None
    allow_multiple_branches: bool = False
    branch_count: int = 1
    cost_per_branch: float = 0
    annual_discount_percent: float = 0
    trial_period_days: int = 0
    name: str = ""
    modules: Mapping[str, int | None] = field(default_factory=dict)
    is_active: bool = True

    @property
    def max_branches(self) -> int:
        return self.branch_count if self.allow_multiple_branches else 1

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Plan":
        """Build and validate a plan from a catalog record (snake_case keys)."""
        try:
            billing_cycle = BillingCycle(data.get("billing_cycle", BillingCycle.MONTHLY))
        except ValueError:
            raise InvalidPlan(
                [f"billing_cycle must be one of {[c.value for c in BillingCycle]}"],
                plan_id=data.get("id"),
            ) from None

        plan = cls(
            id=str(data.get("id") or ""),
            billing_cycle=billing_cycle,
            base_price=data.get("base_price", 0),
            base_bed_count=data.get("base_bed_count", 1),
            top_up_price_per_bed=data.get("top_up_price_per_bed", 0),
            max_beds_allowed=data.get("max_beds_allowed"),
            allow_multiple_branches=bool(data.get("allow_multiple_branches", False)),
            branch_count=data.get("branch_count", 1),
            cost_per_branch=data.get("cost_per_branch", 0),
            annual_discount_percent=data.get("annual_discount_percent", 0),
            trial_period_days=data.get("trial_period_days", 0),
            name=data.get("name") or str(data.get("id") or ""),
            modules=dict(data.get("modules") or {}),
            is_active=bool(data.get("is_active", True)),
        )
        return validate_plan(plan)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def plan_violations(plan: Plan) -> list[str]:
    violations: list[str] = []

    if not plan.id:
        violations.append("id is required")
    if not isinstance(plan.billing_cycle, BillingCycle):
        violations.append("billing_cycle must be monthly or annual")
    if not _is_number(plan.base_price) or plan.base_price < 0:
        violations.append("base_price must be a number >= 0")
    if not _is_int(plan.base_bed_count) or plan.base_bed_count < 1:
        violations.append("base_bed_count must be an integer >= 1")
    if not _is_number(plan.top_up_price_per_bed) or plan.top_up_price_per_bed < 0:
        violations.append("top_up_price_per_bed must be a number >= 0")
    if plan.max_beds_allowed is not None:
        if not _is_int(plan.max_beds_allowed):
            violations.append("max_beds_allowed must be an integer or null")
        elif _is_int(plan.base_bed_count) and plan.max_beds_allowed < plan.base_bed_count:
            violations.append("max_beds_allowed must be >= base_bed_count")
    if not _is_int(plan.branch_count) or plan.branch_count < 1:
        violations.append("branch_count must be an integer >= 1")
    if not _is_number(plan.cost_per_branch) or plan.cost_per_branch < 0:
        violations.append("cost_per_branch must be a number >= 0")
    if not _is_number(plan.annual_discount_percent) or not 0 <= plan.annual_discount_percent <= 100:
        violations.append("annual_discount_percent must be between 0 and 100")
    if not _is_int(plan.trial_period_days) or plan.trial_period_days < 0:
        violations.append("trial_period_days must be an integer >= 0")

    for module, limit in plan.modules.items():
        if not is_valid_module(module):
            violations.append(f"unknown module {module!r}")
        elif limit is not None and (not _is_int(limit) or limit < 0):
            violations.append(f"module {module!r} limit must be an integer >= 0 or null")

    return violations


def validate_plan(plan: Plan) -> Plan:
    """Return ``plan`` unchanged, or raise ``InvalidPlan`` listing every broken rule."""
    violations = plan_violations(plan)
    if violations:
        raise InvalidPlan(violations, plan_id=plan.id or None)
    return plan


def plan_has_module(plan: Plan, module: str) -> bool:
    return module in plan.modules


def module_limit(plan: Plan, module: str) -> int | None:
    return plan.modules.get(module)
