from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hostel_billing import models  # noqa: F401
from hostel_billing.constants import BillingCycle, SubscriptionStatus
from hostel_billing.db import Base
from hostel_billing.exceptions import ConcurrentModification
from hostel_billing.lifecycle import cancel, change_plan, start_trial, subscribe
from hostel_billing.plans import Plan
from hostel_billing.store import (
    SqlUsageLedger,
    add_plan,
    get_current_subscription,
    get_plan,
    insert_record,
    list_activities,
    list_subscriptions,
    require_version,
    run_expiry_sweep,
    save_plan_change,
    save_transition,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

BASIC = Plan(
    id="basic",
    billing_cycle=BillingCycle.MONTHLY,
    base_price=1000,
    base_bed_count=10,
    top_up_price_per_bed=150,
    trial_period_days=14,
    modules={"bulk_upload": 25},
)

PRO = Plan(
    id="pro",
    billing_cycle=BillingCycle.MONTHLY,
    base_price=2500,
    base_bed_count=30,
)


@pytest.fixture()
def session(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path}/store.db", future=True)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as db:
        add_plan(db, BASIC)
        add_plan(db, PRO)
        db.commit()
        yield db
    engine.dispose()


def test_plan_round_trips_through_the_table(session) -> None:
    stored = get_plan(session, "basic")

    assert stored.base_bed_count == 10
    assert stored.modules == {"bulk_upload": 25}
    assert stored.name == "basic"
    assert get_plan(session, "missing") is None


def test_stale_version_is_rejected(session) -> None:
    record = insert_record(session, subscribe("tenant-1", BASIC, NOW, beds=20))
    session.commit()

    cancelled = save_transition(session, record, cancel(record, "closing", NOW))
    session.commit()
    assert cancelled.version == 2

    with pytest.raises(ConcurrentModification) as exc_info:
        save_transition(session, record, replace(record, version=2, total_beds=25))
    assert exc_info.value.to_dict()["error_code"] == "CONCURRENT_MODIFICATION"

    with pytest.raises(ConcurrentModification):
        require_version(get_current_subscription(session, "tenant-1"), 1)


def test_plan_change_links_superseded_record(session) -> None:
    record = insert_record(session, subscribe("tenant-1", BASIC, NOW, beds=20))

    superseded, current = save_plan_change(session, record, change_plan(record, BASIC, PRO, NOW))
    session.commit()

    assert superseded.superseded_by_id == current.id
    assert get_current_subscription(session, "tenant-1").plan_id == "pro"
    statuses = [item.status for item in list_subscriptions(session, "tenant-1")]
    assert statuses == [SubscriptionStatus.UPGRADED, SubscriptionStatus.ACTIVE]


def test_usage_updates_do_not_bump_version(session) -> None:
    record = insert_record(session, subscribe("tenant-1", BASIC, NOW, beds=20))
    session.commit()
    ledger = SqlUsageLedger(session)

    ledger.record_usage_delta("tenant-1", "bed", 4)
    usage = ledger.record_usage_delta("tenant-1", "bed", -10)
    session.commit()

    assert usage.beds_used == 0
    assert get_current_subscription(session, "tenant-1").version == record.version
    activity_types = [item.activity_type for item in list_activities(session, "tenant-1")]
    assert activity_types[-2:] == ["bed_allocated", "bed_deallocated"]


def test_usage_without_subscription_is_untracked(session) -> None:
    assert SqlUsageLedger(session).record_usage_delta("nobody", "bed", 3).beds_used == 0


def test_expiry_sweep_expires_due_records(session) -> None:
    trial = insert_record(session, start_trial("tenant-1", BASIC, NOW))
    insert_record(session, subscribe("tenant-2", BASIC, NOW))
    session.commit()

    changed = run_expiry_sweep(session, NOW + timedelta(days=20))
    session.commit()

    assert [item.id for item in changed] == [trial.id]
    assert changed[0].status == SubscriptionStatus.EXPIRED
    assert run_expiry_sweep(session, NOW + timedelta(days=20)) == []
