"""Subscription lifecycle.

Live records move between trial, active, expired and cancelled. A plan change
closes the live record as ``upgraded``/``downgraded`` and opens a new active
one. Every function here is pure: it returns a new record with ``version``
bumped, or the input record untouched when the call repeats a transition that
already happened. Persisting the result against the version it was computed
from is the caller's job (see ``store.save_transition``).
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from .constants import (
    BillingCycle,
    CapacityKind,
    SubscriptionStatus,
    TenantTier,
)
from .exceptions import InvalidArgument, InvalidTransition
from .logging import get_logger
from .plans import Plan
from .pricing import calculate_cost
from .quota import check_capacity, coerce_kind
from .records import EntitlementIncrease, SubscriptionRecord, Usage

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED})


@dataclass(frozen=True)
class PlanChange:
    """Outcome of an upgrade/downgrade.

    ``superseded`` is ``None`` when the tenant was already on the requested
    plan and entitlement, in which case ``current`` is the unchanged record.
    """

    superseded: SubscriptionRecord | None
    current: SubscriptionRecord

    @property
    def applied(self) -> bool:
        return self.superseded is not None


def add_months(moment: datetime, months: int) -> datetime:
    year, month_index = divmod(moment.month - 1 + months, 12)
    year += moment.year
    month = month_index + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def cycle_end(start: datetime, billing_cycle: BillingCycle) -> datetime:
    if billing_cycle == BillingCycle.ANNUAL:
        return add_months(start, 12)
    return add_months(start, 1)


def _transition(record: SubscriptionRecord, now: datetime, event: str, **changes) -> SubscriptionRecord:
    updated = replace(
        record,
        version=record.version + 1,
        updated_at=now,
        last_event=event,
        **changes,
    )
    logger.info(
        "subscription_transition",
        transition=event,
        tenant_id=record.tenant_id,
        subscription_id=record.id,
        from_status=record.status.value,
        to_status=updated.status.value,
        version=updated.version,
    )
    return updated


def _reject(record: SubscriptionRecord, requested: str, message: str) -> InvalidTransition:
    logger.warning(
        "subscription_transition_rejected",
        tenant_id=record.tenant_id,
        subscription_id=record.id,
        status=record.status.value,
        requested=requested,
    )
    return InvalidTransition(message, current_status=record.status.value, requested=requested)


def _resolve_entitlement(plan: Plan, beds: int | None, branches: int | None) -> tuple[int, int]:
    beds = plan.base_bed_count if beds is None else beds
    branches = 1 if branches is None else branches

    if isinstance(beds, bool) or not isinstance(beds, int) or beds < plan.base_bed_count:
        raise InvalidArgument(
            f"Bed count cannot be less than the plan's base bed count ({plan.base_bed_count}).",
            context={"beds": beds, "base_bed_count": plan.base_bed_count},
        )
    if plan.max_beds_allowed is not None and beds > plan.max_beds_allowed:
        raise InvalidArgument(
            f"Bed count exceeds the plan maximum ({plan.max_beds_allowed}).",
            context={"beds": beds, "max_beds_allowed": plan.max_beds_allowed},
        )
    if isinstance(branches, bool) or not isinstance(branches, int) or branches < 1:
        raise InvalidArgument("Branch count must be at least 1.", context={"branches": branches})
    if branches > plan.max_branches:
        raise InvalidArgument(
            f"Branch count exceeds the plan maximum ({plan.max_branches}).",
            context={"branches": branches, "max_branches": plan.max_branches},
        )
    return beds, branches


def _guard_capacity(
    record: SubscriptionRecord,
    plan: Plan,
    beds: int,
    branches: int,
    requested: str,
) -> None:
    """Reject an entitlement that the tenant's current usage already exceeds."""
    probe = replace(
        record,
        plan_id=plan.id,
        status=SubscriptionStatus.ACTIVE,
        onboarding=False,
        total_beds=beds,
        total_branches=branches,
        custom_max_beds=None,
        custom_max_branches=None,
        usage=Usage(),
    )
    for kind in CapacityKind:
        result = check_capacity(probe, kind, record.usage.get(kind), TenantTier.PAID)
        if not result.can_add:
            raise InvalidTransition(
                f"Current {kind.value} usage ({result.requested}) exceeds the new entitlement "
                f"({int(result.limit)}); add {result.beds_needed} more to proceed.",
                current_status=record.status.value,
                requested=requested,
                context={"kind": kind.value, "needed": result.beds_needed},
            )


def _require_not_superseded(record: SubscriptionRecord, requested: str) -> None:
    if record.is_superseded:
        raise _reject(record, requested, "Subscription record has been superseded by a newer one.")


def start_trial(
    tenant_id: str,
    plan: Plan,
    now: datetime,
    onboarding: bool = False,
    auto_renew: bool = False,
) -> SubscriptionRecord:
    record = SubscriptionRecord(
        tenant_id=tenant_id,
        plan_id=plan.id,
        status=SubscriptionStatus.TRIAL,
        billing_cycle=plan.billing_cycle,
        start_date=now,
        trial_end_date=now + timedelta(days=plan.trial_period_days),
        total_beds=plan.base_bed_count,
        total_branches=plan.max_branches,
        auto_renew=auto_renew,
        onboarding=onboarding,
        last_event="trial_started",
        updated_at=now,
    )
    logger.info("trial_started", tenant_id=tenant_id, plan_id=plan.id, onboarding=onboarding)
    return record


def subscribe(
    tenant_id: str,
    plan: Plan,
    now: datetime,
    beds: int | None = None,
    branches: int | None = None,
    auto_renew: bool = True,
    usage: Usage | None = None,
) -> SubscriptionRecord:
    """Open a new active record (first plan selection, or after a cancellation)."""
    beds, branches = _resolve_entitlement(plan, beds, branches)
    record = SubscriptionRecord(
        tenant_id=tenant_id,
        plan_id=plan.id,
        status=SubscriptionStatus.ACTIVE,
        billing_cycle=plan.billing_cycle,
        start_date=now,
        end_date=cycle_end(now, plan.billing_cycle),
        total_beds=beds,
        total_branches=branches,
        usage=usage or Usage(),
        auto_renew=auto_renew,
        last_event="subscription_created",
        updated_at=now,
    )
    _guard_capacity(record, plan, beds, branches, "subscribe")
    logger.info("subscription_created", tenant_id=tenant_id, plan_id=plan.id, beds=beds, branches=branches)
    return record


def activate(
    record: SubscriptionRecord,
    plan: Plan,
    now: datetime,
    beds: int | None = None,
    branches: int | None = None,
    auto_renew: bool | None = None,
) -> SubscriptionRecord:
    """Trial to active on a successful purchase before the trial ends."""
    _require_not_superseded(record, "activate")
    if record.status == SubscriptionStatus.ACTIVE and record.plan_id == plan.id:
        return record
    if record.status != SubscriptionStatus.TRIAL:
        raise _reject(record, "activate", "Only a trial subscription can be activated.")
    if record.trial_end_date is not None and now > record.trial_end_date:
        raise _reject(record, "activate", "Trial has ended; resubscribe instead.")

    beds, branches = _resolve_entitlement(plan, beds, branches)
    _guard_capacity(record, plan, beds, branches, "activate")
    return _transition(
        record,
        now,
        "trial_converted",
        status=SubscriptionStatus.ACTIVE,
        plan_id=plan.id,
        billing_cycle=plan.billing_cycle,
        start_date=now,
        end_date=cycle_end(now, plan.billing_cycle),
        trial_end_date=None,
        onboarding=False,
        total_beds=beds,
        total_branches=branches,
        auto_renew=record.auto_renew if auto_renew is None else auto_renew,
    )


def evaluate_expiry(
    record: SubscriptionRecord,
    now: datetime,
    renewal_paid: bool = False,
) -> SubscriptionRecord:
    """Time-based transitions. Returns ``record`` itself when nothing is due."""
    if record.status == SubscriptionStatus.TRIAL:
        if record.trial_end_date is None or now <= record.trial_end_date:
            return record
        if record.auto_renew and renewal_paid:
            return _transition(
                record,
                now,
                "trial_converted",
                status=SubscriptionStatus.ACTIVE,
                start_date=record.trial_end_date,
                end_date=cycle_end(record.trial_end_date, record.billing_cycle),
                trial_end_date=None,
                onboarding=False,
            )
        return _transition(
            record,
            now,
            "trial_expired",
            status=SubscriptionStatus.EXPIRED,
            end_date=record.trial_end_date,
        )

    if record.status == SubscriptionStatus.ACTIVE:
        if record.end_date is None or now <= record.end_date:
            return record
        if record.auto_renew and renewal_paid:
            return _transition(
                record,
                now,
                "subscription_renewed",
                start_date=record.end_date,
                end_date=cycle_end(record.end_date, record.billing_cycle),
            )
        return _transition(record, now, "subscription_expired", status=SubscriptionStatus.EXPIRED)

    return record


def cancel(record: SubscriptionRecord, reason: str | None, now: datetime) -> SubscriptionRecord:
    if record.status == SubscriptionStatus.CANCELLED:
        return record
    _require_not_superseded(record, "cancel")
    if record.status not in (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE):
        raise _reject(record, "cancel", f"Cannot cancel a subscription that is {record.status.value}.")

    return _transition(
        record,
        now,
        "subscription_cancelled",
        status=SubscriptionStatus.CANCELLED,
        end_date=record.end_date or now,
        cancelled_at=now,
        cancellation_reason=reason or "",
        auto_renew=False,
    )


def change_plan(
    record: SubscriptionRecord,
    current_plan: Plan,
    target_plan: Plan,
    now: datetime,
    beds: int | None = None,
    branches: int | None = None,
) -> PlanChange:
    """Swap plans immediately.

    Without explicit ``beds``/``branches`` the new record gets the target
    plan's base entitlement. Passing them is how a caller forces a top-up in
    the same write as a downgrade.
    """
    _require_not_superseded(record, "change_plan")
    if record.status != SubscriptionStatus.ACTIVE:
        raise _reject(record, "change_plan", "Only an active subscription can change plans.")
    if current_plan.id != record.plan_id:
        raise InvalidArgument(
            "current_plan does not match the subscription's plan.",
            context={"plan_id": record.plan_id, "current_plan": current_plan.id},
        )

    beds, branches = _resolve_entitlement(target_plan, beds, branches)
    if record.plan_id == target_plan.id and (beds, branches) == (record.total_beds, record.total_branches):
        return PlanChange(superseded=None, current=record)

    _guard_capacity(record, target_plan, beds, branches, "change_plan")

    old_monthly = calculate_cost(current_plan, record.total_beds, record.total_branches).effective_monthly
    new_monthly = calculate_cost(target_plan, beds, branches).effective_monthly
    if new_monthly >= old_monthly:
        status, event = SubscriptionStatus.UPGRADED, "plan_upgraded"
    else:
        status, event = SubscriptionStatus.DOWNGRADED, "plan_downgraded"

    superseded = _transition(record, now, event, status=status, end_date=now, auto_renew=False)
    current = SubscriptionRecord(
        tenant_id=record.tenant_id,
        plan_id=target_plan.id,
        status=SubscriptionStatus.ACTIVE,
        billing_cycle=target_plan.billing_cycle,
        start_date=now,
        end_date=cycle_end(now, target_plan.billing_cycle),
        total_beds=beds,
        total_branches=branches,
        usage=record.usage,
        auto_renew=record.auto_renew,
        last_event=event,
        updated_at=now,
    )
    return PlanChange(superseded=superseded, current=current)


def resubscribe(
    record: SubscriptionRecord,
    plan: Plan,
    now: datetime,
    beds: int | None = None,
    branches: int | None = None,
    auto_renew: bool = True,
) -> SubscriptionRecord:
    """Expired records come back to life; cancelled ones are replaced by a new record.

    The returned record has ``id is None`` when a new record must be inserted.
    """
    _require_not_superseded(record, "resubscribe")
    if record.status == SubscriptionStatus.ACTIVE and record.plan_id == plan.id:
        return record
    if record.status == SubscriptionStatus.CANCELLED:
        return subscribe(record.tenant_id, plan, now, beds, branches, auto_renew, usage=record.usage)
    if record.status != SubscriptionStatus.EXPIRED:
        raise _reject(record, "resubscribe", f"Cannot resubscribe a subscription that is {record.status.value}.")

    beds, branches = _resolve_entitlement(plan, beds, branches)
    _guard_capacity(record, plan, beds, branches, "resubscribe")
    return _transition(
        record,
        now,
        "subscription_resubscribed",
        status=SubscriptionStatus.ACTIVE,
        plan_id=plan.id,
        billing_cycle=plan.billing_cycle,
        start_date=now,
        end_date=cycle_end(now, plan.billing_cycle),
        trial_end_date=None,
        onboarding=False,
        total_beds=beds,
        total_branches=branches,
        auto_renew=auto_renew,
    )


def plan_top_up(record: SubscriptionRecord, kind: CapacityKind | str, additional: int) -> EntitlementIncrease:
    kind = coerce_kind(kind)
    if isinstance(additional, bool) or not isinstance(additional, int) or additional < 1:
        raise InvalidArgument("additional must be a positive integer.", context={"additional": additional})
    return EntitlementIncrease(kind=kind, additional=additional, new_max=record.entitlement(kind) + additional)


def top_up_target(record: SubscriptionRecord, kind: CapacityKind | str, new_max: int) -> EntitlementIncrease:
    """Increase towards an absolute entitlement, so a retried request lands on the same level."""
    kind = coerce_kind(kind)
    if isinstance(new_max, bool) or not isinstance(new_max, int) or new_max < 1:
        raise InvalidArgument("new_max must be a positive integer.", context={"new_max": new_max})
    return EntitlementIncrease(kind=kind, additional=new_max - record.entitlement(kind), new_max=new_max)


def top_up(
    record: SubscriptionRecord,
    plan: Plan,
    increase: EntitlementIncrease,
    now: datetime,
) -> SubscriptionRecord:
    """Raise entitlement to ``increase.new_max``. Already at that level is a no-op.

    A per-tenant custom cap on the same kind is raised by the same amount.
    """
    _require_not_superseded(record, "top_up")
    if record.status != SubscriptionStatus.ACTIVE:
        raise _reject(record, "top_up", "Only an active subscription can be topped up.")
    if plan.id != record.plan_id:
        raise InvalidArgument("plan does not match the subscription's plan.", context={"plan_id": plan.id})

    current = record.entitlement(increase.kind)
    if current == increase.new_max:
        return record
    if increase.new_max < current:
        raise InvalidArgument(
            "A top-up cannot lower the entitlement.",
            context={"current": current, "new_max": increase.new_max},
        )

    added = increase.new_max - current
    custom = record.custom_cap(increase.kind)
    if increase.kind == CapacityKind.BED:
        _resolve_entitlement(plan, increase.new_max, record.total_branches)
        return _transition(
            record,
            now,
            "beds_topped_up",
            total_beds=increase.new_max,
            custom_max_beds=None if custom is None else custom + added,
        )

    if not plan.allow_multiple_branches:
        raise InvalidArgument("This plan does not allow multiple branches.", context={"plan_id": plan.id})
    _resolve_entitlement(plan, record.total_beds, increase.new_max)
    return _transition(
        record,
        now,
        "branches_topped_up",
        total_branches=increase.new_max,
        custom_max_branches=None if custom is None else custom + added,
    )


def extend(record: SubscriptionRecord, days: int, now: datetime) -> SubscriptionRecord:
    _require_not_superseded(record, "extend")
    if isinstance(days, bool) or not isinstance(days, int) or days < 1:
        raise InvalidArgument("days must be a positive integer.", context={"days": days})
    if record.status == SubscriptionStatus.TRIAL:
        base = record.trial_end_date or now
        return _transition(record, now, "trial_extended", trial_end_date=base + timedelta(days=days))
    if record.status != SubscriptionStatus.ACTIVE:
        raise _reject(record, "extend", f"Cannot extend a subscription that is {record.status.value}.")
    base = record.end_date or now
    return _transition(record, now, "subscription_extended", end_date=base + timedelta(days=days))


def days_remaining(record: SubscriptionRecord, now: datetime) -> int:
    end = record.trial_end_date if record.status == SubscriptionStatus.TRIAL else record.end_date
    if end is None or record.status in TERMINAL_STATUSES or record.is_superseded:
        return 0
    return max(0, math.ceil((end - now).total_seconds() / 86400))


def renewal_date(record: SubscriptionRecord) -> datetime | None:
    """End of the period a renewal would buy."""
    if record.end_date is None:
        return None
    return cycle_end(record.end_date, record.billing_cycle)


def cancellation_payload(reason: str | None) -> dict[str, str]:
    return {"cancellationReason": reason or ""}
