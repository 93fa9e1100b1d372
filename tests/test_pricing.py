from __future__ import annotations

import random

import pytest

from hostel_billing.constants import BillingCycle
from hostel_billing.exceptions import InvalidArgument
from hostel_billing.plans import Plan
from hostel_billing.pricing import annual_price, calculate_cost, monthly_price


def make_plan(**overrides) -> Plan:
    values = {
        "id": "basic",
        "billing_cycle": BillingCycle.MONTHLY,
        "base_price": 1000,
        "base_bed_count": 10,
        "top_up_price_per_bed": 150,
    }
    values.update(overrides)
    return Plan(**values)


def test_monthly_plan_with_bed_top_up() -> None:
    cost = calculate_cost(make_plan(), 13, 1)

    assert cost.extra_beds == 3
    assert cost.top_up_cost == 450
    assert cost.total_monthly == 1450
    assert cost.total_annual == 1450 * 12
    assert cost.effective_monthly == 1450
    assert cost.savings_annual == 0


def test_annual_plan_applies_discount() -> None:
    plan = make_plan(billing_cycle=BillingCycle.ANNUAL, annual_discount_percent=10)

    cost = calculate_cost(plan, 10, 1)

    assert cost.top_up_cost == 0
    assert cost.total_annual == pytest.approx(10800)
    assert cost.effective_monthly == pytest.approx(900)
    assert cost.savings_annual == pytest.approx(1200)


def test_no_top_up_at_or_below_base_bed_count() -> None:
    plan = make_plan(base_bed_count=25)
    for beds in range(0, 26):
        assert calculate_cost(plan, beds).top_up_cost == 0


def test_top_up_cost_is_exact_for_random_integer_inputs() -> None:
    rng = random.Random(20260117)
    for _ in range(10_000):
        base_beds = rng.randint(1, 200)
        price = rng.randint(0, 1000)
        requested = rng.randint(base_beds + 1, base_beds + 5000)
        plan = make_plan(base_bed_count=base_beds, top_up_price_per_bed=price)

        cost = calculate_cost(plan, requested)

        assert cost.top_up_cost == (requested - base_beds) * price


def test_single_branch_plan_never_charges_for_branches() -> None:
    plan = make_plan(allow_multiple_branches=False, cost_per_branch=999, branch_count=5)
    for branches in range(0, 20):
        cost = calculate_cost(plan, 10, branches)
        assert cost.branch_cost == 0
        assert cost.extra_branches == 0


def test_first_branch_is_included_in_base_price() -> None:
    plan = make_plan(allow_multiple_branches=True, branch_count=5, cost_per_branch=200)

    assert calculate_cost(plan, 10, 1).branch_cost == 0
    cost = calculate_cost(plan, 12, 3)
    assert cost.extra_branches == 2
    assert cost.branch_cost == 400
    assert cost.total_monthly == 1000 + 300 + 400


@pytest.mark.parametrize("discount", [0, 5, 12.5, 33, 99.9, 100])
def test_annual_discount_scales_undiscounted_total(discount: float) -> None:
    undiscounted = make_plan(billing_cycle=BillingCycle.ANNUAL, annual_discount_percent=0)
    discounted = make_plan(billing_cycle=BillingCycle.ANNUAL, annual_discount_percent=discount)

    expected = calculate_cost(undiscounted, 37, 1).total_annual * (1 - discount / 100)

    assert calculate_cost(discounted, 37, 1).total_annual == pytest.approx(expected, rel=1e-9, abs=1e-9)


def test_discount_is_ignored_on_monthly_billing() -> None:
    cost = calculate_cost(make_plan(annual_discount_percent=25), 10)

    assert cost.savings_annual == 0
    assert cost.total_annual == 12000


@pytest.mark.parametrize("beds, branches", [(-1, 1), (10, -1), (True, 1), (10.5, 1)])
def test_rejects_invalid_counts(beds, branches) -> None:
    with pytest.raises(InvalidArgument):
        calculate_cost(make_plan(), beds, branches)


def test_list_prices() -> None:
    plan = make_plan(billing_cycle=BillingCycle.ANNUAL, annual_discount_percent=20)

    assert annual_price(plan) == pytest.approx(9600)
    assert monthly_price(plan) == pytest.approx(800)
