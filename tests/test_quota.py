from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from hostel_billing.constants import (
    BillingCycle,
    CapacityKind,
    DenialReason,
    QuotaOutcome,
    SubscriptionStatus,
    TenantTier,
)
from hostel_billing.exceptions import InvalidArgument
from hostel_billing.plans import Plan
from hostel_billing.quota import (
    check_bulk_upload,
    check_capacity,
    count_beds,
    derive_tenant_tier,
    is_approaching_limit,
    quote_overage,
    usage_percentage,
)
from hostel_billing.records import SubscriptionRecord, Usage

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)

BASIC = Plan(
    id="basic",
    billing_cycle=BillingCycle.MONTHLY,
    base_price=1000,
    base_bed_count=10,
    top_up_price_per_bed=150,
    modules={"bulk_upload": 25},
)


def make_subscription(**overrides) -> SubscriptionRecord:
    values = {
        "tenant_id": "tenant-1",
        "plan_id": "basic",
        "status": SubscriptionStatus.ACTIVE,
        "billing_cycle": BillingCycle.MONTHLY,
        "start_date": NOW,
        "end_date": NOW + timedelta(days=31),
        "total_beds": 20,
        "total_branches": 1,
        "usage": Usage(beds_used=18, branches_used=1),
        "id": 1,
    }
    values.update(overrides)
    return SubscriptionRecord(**values)


def test_paid_tenant_over_entitlement_is_denied_with_overage() -> None:
    result = check_capacity(make_subscription(), CapacityKind.BED, 5, TenantTier.PAID)

    assert result.can_add is False
    assert result.outcome == QuotaOutcome.CAPACITY_EXCEEDED
    assert result.limit == 20
    assert result.used == 18
    assert result.new_total == 23
    assert result.remaining == 2
    assert result.beds_needed == 3
    assert result.denial == DenialReason.PAID_LIMIT


def test_tenant_without_subscription_has_unlimited_capacity() -> None:
    result = check_capacity(None, "bed", 500, "trial")

    assert result.can_add is True
    assert result.unlimited is True
    assert result.beds_needed == 0
    assert result.to_dict()["limit"] is None


def test_onboarding_trial_is_unlimited_but_regular_trial_is_capped() -> None:
    onboarding = make_subscription(status=SubscriptionStatus.TRIAL, onboarding=True, trial_end_date=NOW)
    regular = replace(onboarding, onboarding=False)

    assert check_capacity(onboarding, CapacityKind.BED, 100, TenantTier.TRIAL).can_add is True

    denied = check_capacity(regular, CapacityKind.BED, 100, TenantTier.TRIAL)
    assert denied.can_add is False
    assert denied.denial == DenialReason.TRIAL_LIMIT


def test_record_without_plan_counts_as_onboarding() -> None:
    result = check_capacity(make_subscription(plan_id=None), CapacityKind.BED, 1000, TenantTier.TRIAL)

    assert result.unlimited is True


def test_zero_delta_is_always_allowed() -> None:
    inconsistent = make_subscription(usage=Usage(beds_used=40))

    assert check_capacity(inconsistent, CapacityKind.BED, 0, TenantTier.PAID).can_add is True


def test_denial_is_monotonic_in_usage() -> None:
    for delta in range(1, 6):
        denied_once = False
        for used in range(0, 40):
            subscription = make_subscription(total_beds=10, usage=Usage(beds_used=used))
            can_add = check_capacity(subscription, CapacityKind.BED, delta, TenantTier.PAID).can_add
            if denied_once:
                assert can_add is False
            denied_once = denied_once or not can_add


def test_custom_cap_overrides_entitlement() -> None:
    subscription = make_subscription(custom_max_beds=30)

    result = check_capacity(subscription, CapacityKind.BED, 5, TenantTier.PAID)

    assert result.can_add is True
    assert result.limit == 30
    assert result.remaining == 12


def test_branch_capacity_uses_branch_entitlement() -> None:
    result = check_capacity(make_subscription(), CapacityKind.BRANCH, 1, TenantTier.FREE)

    assert result.can_add is False
    assert result.beds_needed == 1
    assert result.denial == DenialReason.FREE_LIMIT
    assert result.tier == TenantTier.FREE


@pytest.mark.parametrize(
    "kind, delta, tier",
    [("bed", -1, "paid"), ("room", 1, "paid"), ("bed", 1, "gold"), ("bed", 1.5, "paid")],
)
def test_invalid_inputs_raise(kind, delta, tier) -> None:
    with pytest.raises(InvalidArgument):
        check_capacity(make_subscription(), kind, delta, tier)


def test_overage_quote_prices_the_missing_beds() -> None:
    subscription = make_subscription()
    result = check_capacity(subscription, CapacityKind.BED, 5, TenantTier.PAID)

    quote = quote_overage(BASIC, subscription, result)

    assert quote is not None
    assert quote.to_payload() == {"additionalBeds": 3, "newMaxBeds": 23}
    assert quote.cost.top_up_cost == 13 * 150
    assert quote.additional_monthly == 450


def test_no_quote_when_allowed() -> None:
    subscription = make_subscription()
    result = check_capacity(subscription, CapacityKind.BED, 2, TenantTier.PAID)

    assert quote_overage(BASIC, subscription, result) is None


def test_tier_derivation() -> None:
    free_plan = replace(BASIC, id="free", base_price=0)

    assert derive_tenant_tier(None, None) == TenantTier.TRIAL
    assert derive_tenant_tier(make_subscription(status=SubscriptionStatus.TRIAL), BASIC) == TenantTier.TRIAL
    assert derive_tenant_tier(make_subscription(plan_id="free"), free_plan) == TenantTier.FREE
    assert derive_tenant_tier(make_subscription(), BASIC) == TenantTier.PAID


def test_approaching_limit() -> None:
    assert usage_percentage(make_subscription(usage=Usage(beds_used=16)), "bed") == 80
    assert is_approaching_limit(make_subscription(usage=Usage(beds_used=16)), "bed") is True
    assert is_approaching_limit(make_subscription(usage=Usage(beds_used=15)), "bed") is False
    assert is_approaching_limit(None, "bed") is False


def test_count_beds_reads_room_payloads() -> None:
    rooms = [
        {"roomNumber": "101", "bedNumber": "3"},
        {"roomNumber": "102", "beds": 2},
        {"roomNumber": "103", "bedNumber": 0, "beds": 4},
        {"roomNumber": "104", "bedNumber": "n/a"},
    ]

    assert count_beds(rooms) == 9
    assert count_beds({"numberOfBeds": 6}) == 6


def test_count_beds_rejects_negative_rooms() -> None:
    with pytest.raises(InvalidArgument):
        count_beds([{"beds": -2}])


def test_bulk_upload_batch_limit_is_checked_separately() -> None:
    subscription = make_subscription(total_beds=100, usage=Usage(beds_used=0))
    rooms = [{"beds": 10}, {"beds": 10}, {"beds": 10}]

    check = check_bulk_upload(subscription, BASIC, rooms, TenantTier.PAID)

    assert check.batch_beds == 30
    assert check.batch_limit == 25
    assert check.capacity.can_add is True
    assert check.within_batch_limit is False
    assert check.can_proceed is False


def test_bulk_upload_requires_module() -> None:
    plan = replace(BASIC, modules={})
    check = check_bulk_upload(make_subscription(usage=Usage()), plan, [{"beds": 2}], TenantTier.PAID)

    assert check.module_enabled is False
    assert check.can_proceed is False


def test_bulk_upload_during_onboarding() -> None:
    check = check_bulk_upload(None, None, [{"beds": 400}], TenantTier.TRIAL, default_batch_limit=50)

    assert check.can_proceed is True
    assert check.batch_limit is None


def test_overage_quote_under_custom_cap_adds_what_is_missing() -> None:
    subscription = make_subscription(custom_max_beds=15, usage=Usage(beds_used=14, branches_used=1))
    result = check_capacity(subscription, CapacityKind.BED, 5, TenantTier.PAID)

    quote = quote_overage(BASIC, subscription, result)

    assert result.beds_needed == 4
    assert quote.to_payload() == {"additionalBeds": 4, "newMaxBeds": 24}
    assert quote.additional_monthly == 4 * 150


def test_no_quote_for_extra_branch_on_single_branch_plan() -> None:
    subscription = make_subscription()
    result = check_capacity(subscription, CapacityKind.BRANCH, 1, TenantTier.PAID)

    assert result.can_add is False
    assert quote_overage(BASIC, subscription, result) is None


def test_no_quote_beyond_plan_bed_maximum() -> None:
    capped = replace(BASIC, max_beds_allowed=21)
    subscription = make_subscription()
    result = check_capacity(subscription, CapacityKind.BED, 5, TenantTier.PAID)

    assert quote_overage(capped, subscription, result) is None


def test_branch_quote_on_multi_branch_plan() -> None:
    plan = replace(BASIC, allow_multiple_branches=True, branch_count=3, cost_per_branch=500)
    subscription = make_subscription()
    result = check_capacity(subscription, CapacityKind.BRANCH, 1, TenantTier.PAID)

    quote = quote_overage(plan, subscription, result)

    assert quote.to_payload() == {"additionalBranches": 1, "newMaxBranches": 2}
    assert quote.additional_monthly == 500
