from __future__ import annotations

import pytest

from hostel_billing.constants import BillingCycle
from hostel_billing.exceptions import InvalidArgument, InvalidPlan
from hostel_billing.plans import Plan, module_limit, plan_has_module, validate_plan


def test_from_mapping_builds_a_valid_plan() -> None:
    plan = Plan.from_mapping(
        {
            "id": "growth",
            "billing_cycle": "annual",
            "base_price": 2500,
            "base_bed_count": 30,
            "top_up_price_per_bed": 100,
            "max_beds_allowed": 200,
            "allow_multiple_branches": True,
            "branch_count": 3,
            "cost_per_branch": 500,
            "annual_discount_percent": 15,
            "trial_period_days": 14,
            "modules": {"bulk_upload": 100, "analytics_reports": None},
        }
    )

    assert plan.billing_cycle == BillingCycle.ANNUAL
    assert plan.name == "growth"
    assert plan.max_branches == 3
    assert plan_has_module(plan, "analytics_reports")
    assert module_limit(plan, "bulk_upload") == 100
    assert not plan_has_module(plan, "api_access")


def test_single_branch_plan_caps_branches_at_one() -> None:
    plan = Plan(id="solo", billing_cycle=BillingCycle.MONTHLY, base_price=0, base_bed_count=5, branch_count=4)

    assert plan.max_branches == 1


def test_invalid_plan_lists_every_violation() -> None:
    with pytest.raises(InvalidPlan) as exc_info:
        Plan.from_mapping(
            {
                "id": "broken",
                "base_price": -1,
                "base_bed_count": 0,
                "annual_discount_percent": 120,
                "modules": {"teleportation": None},
            }
        )

    violations = exc_info.value.violations
    assert "base_price must be a number >= 0" in violations
    assert "base_bed_count must be an integer >= 1" in violations
    assert "annual_discount_percent must be between 0 and 100" in violations
    assert "unknown module 'teleportation'" in violations
    assert exc_info.value.to_dict()["error_code"] == "INVALID_PLAN"


def test_max_beds_below_base_is_rejected() -> None:
    plan = Plan(
        id="capped",
        billing_cycle=BillingCycle.MONTHLY,
        base_price=100,
        base_bed_count=10,
        max_beds_allowed=5,
    )

    with pytest.raises(InvalidArgument, match="max_beds_allowed must be >= base_bed_count"):
        validate_plan(plan)


def test_unknown_billing_cycle_is_rejected() -> None:
    with pytest.raises(InvalidPlan):
        Plan.from_mapping({"id": "weekly", "billing_cycle": "weekly", "base_price": 10, "base_bed_count": 1})
