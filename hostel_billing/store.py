"""Persistence adapter for plans and subscription records.

Lifecycle writes use compare-and-set on ``version``: a transition computed from
version N only lands if the row is still at version N. Usage counters are
updated with an atomic SQL increment and never touch ``version``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from .constants import BillingCycle, CapacityKind, LIVE_STATUSES, SubscriptionStatus
from .exceptions import ConcurrentModification, InvalidArgument
from .lifecycle import PlanChange, evaluate_expiry
from .logging import get_logger
from .models import PlanRow, SubscriptionActivity, SubscriptionRow, utc_now
from .plans import Plan
from .quota import coerce_kind
from .records import SubscriptionRecord, Usage

logger = get_logger(__name__)

# Columns a lifecycle transition may write. Usage counters are deliberately absent.
_LIFECYCLE_FIELDS = (
    "plan_id",
    "status",
    "billing_cycle",
    "start_date",
    "end_date",
    "trial_end_date",
    "total_beds",
    "total_branches",
    "auto_renew",
    "onboarding",
    "custom_max_beds",
    "custom_max_branches",
    "cancelled_at",
    "cancellation_reason",
    "superseded_by_id",
    "version",
    "last_event",
    "updated_at",
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def plan_from_row(row: PlanRow) -> Plan:
    return Plan(
        id=row.id,
        name=row.name,
        billing_cycle=BillingCycle(row.billing_cycle),
        base_price=row.base_price,
        base_bed_count=row.base_bed_count,
        top_up_price_per_bed=row.top_up_price_per_bed,
        max_beds_allowed=row.max_beds_allowed,
        allow_multiple_branches=row.allow_multiple_branches,
        branch_count=row.branch_count,
        cost_per_branch=row.cost_per_branch,
        annual_discount_percent=row.annual_discount_percent,
        trial_period_days=row.trial_period_days,
        modules=dict(row.modules or {}),
        is_active=row.is_active,
    )


def record_from_row(row: SubscriptionRow) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        billing_cycle=BillingCycle(row.billing_cycle),
        start_date=_as_utc(row.start_date),
        end_date=_as_utc(row.end_date),
        trial_end_date=_as_utc(row.trial_end_date),
        total_beds=row.total_beds,
        total_branches=row.total_branches,
        usage=Usage(beds_used=row.beds_used, branches_used=row.branches_used),
        auto_renew=row.auto_renew,
        onboarding=row.onboarding,
        custom_max_beds=row.custom_max_beds,
        custom_max_branches=row.custom_max_branches,
        cancelled_at=_as_utc(row.cancelled_at),
        cancellation_reason=row.cancellation_reason,
        superseded_by_id=row.superseded_by_id,
        version=row.version,
        last_event=row.last_event,
        updated_at=_as_utc(row.updated_at),
    )


def _lifecycle_values(record: SubscriptionRecord) -> dict:
    values = {name: getattr(record, name) for name in _LIFECYCLE_FIELDS}
    values["status"] = record.status.value
    values["billing_cycle"] = record.billing_cycle.value
    values["updated_at"] = record.updated_at or utc_now()
    return values


def add_plan(db: Session, plan: Plan) -> Plan:
    db.add(
        PlanRow(
            id=plan.id,
            name=plan.name or plan.id,
            billing_cycle=plan.billing_cycle.value,
            base_price=plan.base_price,
            base_bed_count=plan.base_bed_count,
            top_up_price_per_bed=plan.top_up_price_per_bed,
            max_beds_allowed=plan.max_beds_allowed,
            allow_multiple_branches=plan.allow_multiple_branches,
            branch_count=plan.branch_count,
            cost_per_branch=plan.cost_per_branch,
            annual_discount_percent=plan.annual_discount_percent,
            trial_period_days=plan.trial_period_days,
            modules=dict(plan.modules),
            is_active=plan.is_active,
        )
    )
    db.flush()
    return plan


def get_plan(db: Session, plan_id: str) -> Plan | None:
    row = db.get(PlanRow, plan_id)
    return plan_from_row(row) if row else None


def list_plans(db: Session, active_only: bool = True) -> list[Plan]:
    query = select(PlanRow).order_by(PlanRow.base_price, PlanRow.id)
    if active_only:
        query = query.where(PlanRow.is_active.is_(True))
    return [plan_from_row(row) for row in db.scalars(query).all()]


def _current_row_query(tenant_id: str):
    return (
        select(SubscriptionRow)
        .where(
            SubscriptionRow.tenant_id == tenant_id,
            SubscriptionRow.superseded_by_id.is_(None),
            SubscriptionRow.status.in_([status.value for status in LIVE_STATUSES]),
        )
        .order_by(SubscriptionRow.id.desc())
        .limit(1)
    )


def get_current_subscription(db: Session, tenant_id: str) -> SubscriptionRecord | None:
    row = db.scalar(_current_row_query(tenant_id))
    return record_from_row(row) if row else None


def list_subscriptions(db: Session, tenant_id: str) -> list[SubscriptionRecord]:
    rows = db.scalars(
        select(SubscriptionRow).where(SubscriptionRow.tenant_id == tenant_id).order_by(SubscriptionRow.id)
    ).all()
    return [record_from_row(row) for row in rows]


def list_activities(db: Session, tenant_id: str) -> list[SubscriptionActivity]:
    return list(
        db.scalars(
            select(SubscriptionActivity)
            .where(SubscriptionActivity.tenant_id == tenant_id)
            .order_by(SubscriptionActivity.id)
        ).all()
    )


def record_activity(
    db: Session,
    record: SubscriptionRecord,
    activity_type: str,
    description: str | None = None,
    payload: dict | None = None,
) -> None:
    db.add(
        SubscriptionActivity(
            tenant_id=record.tenant_id,
            subscription_id=record.id,
            activity_type=activity_type,
            description=description,
            payload=payload or {},
        )
    )


def require_version(record: SubscriptionRecord, expected_version: int | None) -> None:
    """Fail fast when a caller computed its request from an older record."""
    if expected_version is not None and expected_version != record.version:
        logger.warning(
            "stale_subscription_version",
            tenant_id=record.tenant_id,
            subscription_id=record.id,
            expected_version=expected_version,
            actual_version=record.version,
        )
        raise ConcurrentModification(record.id, expected_version, record.version)


def insert_record(db: Session, record: SubscriptionRecord) -> SubscriptionRecord:
    row = SubscriptionRow(
        tenant_id=record.tenant_id,
        beds_used=record.usage.beds_used,
        branches_used=record.usage.branches_used,
        **_lifecycle_values(record),
    )
    db.add(row)
    db.flush()
    stored = replace(record, id=row.id)
    record_activity(db, stored, record.last_event or "subscription_created", payload={"status": record.status.value})
    return stored


def save_transition(
    db: Session,
    before: SubscriptionRecord,
    after: SubscriptionRecord,
) -> SubscriptionRecord:
    """Persist ``after`` if the row is still at ``before.version``."""
    if after is before:
        return before
    if after.id is None:
        return insert_record(db, after)

    result = db.execute(
        update(SubscriptionRow)
        .where(SubscriptionRow.id == before.id, SubscriptionRow.version == before.version)
        .values(**_lifecycle_values(after))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        actual = db.scalar(select(SubscriptionRow.version).where(SubscriptionRow.id == before.id))
        logger.warning(
            "subscription_write_conflict",
            tenant_id=before.tenant_id,
            subscription_id=before.id,
            expected_version=before.version,
            actual_version=actual,
        )
        raise ConcurrentModification(before.id, before.version, actual)
    db.expire_all()

    record_activity(
        db,
        after,
        after.last_event or "subscription_updated",
        payload={"from": before.status.value, "to": after.status.value, "version": after.version},
    )
    return after


def save_plan_change(
    db: Session,
    before: SubscriptionRecord,
    change: PlanChange,
) -> tuple[SubscriptionRecord | None, SubscriptionRecord]:
    if not change.applied:
        return None, change.current

    current = insert_record(db, change.current)
    superseded = save_transition(db, before, replace(change.superseded, superseded_by_id=current.id))
    return superseded, current


def run_expiry_sweep(
    db: Session,
    now: datetime,
    renewal_paid: Callable[[SubscriptionRecord], bool] | None = None,
) -> list[SubscriptionRecord]:
    """Apply time-based transitions to every live trial/active record.

    Records that another writer changed in the meantime are skipped; the next
    sweep picks them up.
    """
    rows = db.scalars(
        select(SubscriptionRow).where(
            SubscriptionRow.superseded_by_id.is_(None),
            SubscriptionRow.status.in_([SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value]),
        )
    ).all()

    changed: list[SubscriptionRecord] = []
    for row in rows:
        record = record_from_row(row)
        paid = bool(renewal_paid and renewal_paid(record))
        after = evaluate_expiry(record, now, renewal_paid=paid)
        if after is record:
            continue
        try:
            changed.append(save_transition(db, record, after))
        except ConcurrentModification:
            continue

    logger.info("expiry_sweep_completed", examined=len(rows), changed=len(changed))
    return changed


def _usage_activity(kind: CapacityKind, delta: int) -> str:
    if kind == CapacityKind.BED:
        return "bed_allocated" if delta >= 0 else "bed_deallocated"
    return "branch_created" if delta >= 0 else "branch_removed"


class SqlUsageLedger:
    """Usage ledger over the tenant's live subscription row."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_usage(self, tenant_id: str) -> Usage:
        record = get_current_subscription(self.db, tenant_id)
        return record.usage if record else Usage()

    def record_usage_delta(self, tenant_id: str, kind: CapacityKind | str, delta: int) -> Usage:
        kind = coerce_kind(kind)
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidArgument("delta must be an integer.", context={"delta": delta})

        record = get_current_subscription(self.db, tenant_id)
        if record is None:
            logger.warning("usage_untracked", tenant_id=tenant_id, kind=kind.value, delta=delta)
            return Usage()

        column = SubscriptionRow.beds_used if kind == CapacityKind.BED else SubscriptionRow.branches_used
        self.db.execute(
            update(SubscriptionRow)
            .where(SubscriptionRow.id == record.id)
            .values({column: case((column + delta < 0, 0), else_=column + delta)})
            .execution_options(synchronize_session=False)
        )
        record_activity(
            self.db,
            record,
            _usage_activity(kind, delta),
            payload={"kind": kind.value, "delta": delta},
        )
        self.db.flush()
        self.db.expire_all()
        return self.get_usage(tenant_id)
