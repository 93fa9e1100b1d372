"""FastAPI app exposing bed/branch quota, pricing and subscription lifecycle."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timezone

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import lifecycle
from .config import get_settings
from .constants import SubscriptionStatus
from .db import get_db, init_db
from .exceptions import BillingError, InvalidTransition
from .logging import get_logger, setup_logging
from .models import utc_now
from .plans import Plan
from .pricing import annual_price, calculate_cost, monthly_price
from .quota import (
    QuotaCheckResult,
    TopUpQuote,
    check_bulk_upload,
    check_capacity,
    derive_tenant_tier,
    is_approaching_limit,
    quote_overage,
)
from .records import SubscriptionRecord
from .schemas import (
    ActivityOut,
    BulkUploadOut,
    BulkUploadRequest,
    CancelOut,
    CancelRequest,
    CapacityCheckOut,
    CapacityCheckRequest,
    ChangePlanRequest,
    CostBreakdownOut,
    ExpirySweepOut,
    ExpirySweepRequest,
    HistoryOut,
    PlanChangeOut,
    PlanIn,
    PlanOut,
    PurchaseRequest,
    SubscriptionOut,
    TopUpOut,
    TopUpQuoteOut,
    TopUpRequest,
    TrialRequest,
    UsageDeltaRequest,
    UsageOut,
)
from .store import (
    SqlUsageLedger,
    add_plan,
    get_current_subscription,
    get_plan,
    insert_record,
    list_activities,
    list_plans,
    list_subscriptions,
    require_version,
    run_expiry_sweep,
    save_plan_change,
    save_transition,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    init_db()
    yield


app = FastAPI(
    title=get_settings().app_name,
    description="Bed and branch quota enforcement, tiered pricing and subscription lifecycle for hostel operators.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(BillingError)
async def billing_error_handler(_: Request, exc: BillingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def require_plan(db: Session, plan_id: str) -> Plan:
    plan = get_plan(db, plan_id)
    if not plan:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Plan not found.",
        )
    return plan


def require_subscription(db: Session, tenant_id: str) -> SubscriptionRecord:
    subscription = get_current_subscription(db, tenant_id)
    if not subscription:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tenant has no subscription.",
        )
    return subscription


def plan_for(db: Session, subscription: SubscriptionRecord | None) -> Plan | None:
    if subscription is None or subscription.plan_id is None:
        return None
    return get_plan(db, subscription.plan_id)


def serialize_plan(plan: Plan) -> PlanOut:
    return PlanOut.model_validate(plan).model_copy(
        update={"monthly_price": monthly_price(plan), "annual_price": annual_price(plan)}
    )


def serialize_subscription(subscription: SubscriptionRecord) -> SubscriptionOut:
    return SubscriptionOut.model_validate(subscription).model_copy(
        update={
            "days_remaining": lifecycle.days_remaining(subscription, utc_now()),
            "renewal_date": lifecycle.renewal_date(subscription),
        }
    )


def serialize_quote(quote: TopUpQuote | None) -> TopUpQuoteOut | None:
    if quote is None:
        return None
    return TopUpQuoteOut(
        outbound=quote.to_payload(),
        additional_monthly=quote.additional_monthly,
        cost=CostBreakdownOut.model_validate(quote.cost),
    )


def serialize_check(
    result: QuotaCheckResult,
    approaching: bool = False,
    quote: TopUpQuote | None = None,
) -> CapacityCheckOut:
    return CapacityCheckOut(
        **result.to_dict(),
        approaching_limit=approaching,
        top_up=serialize_quote(quote),
    )


@app.get("/health")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/plans", response_model=PlanOut, status_code=status.HTTP_201_CREATED)
def create_plan(payload: PlanIn, db: Session = Depends(get_db)) -> PlanOut:
    plan = Plan.from_mapping(payload.model_dump())
    if get_plan(db, plan.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Plan id already exists.",
        )
    add_plan(db, plan)
    db.commit()
    logger.info("plan_created", plan_id=plan.id)
    return serialize_plan(plan)


@app.get("/plans", response_model=list[PlanOut])
def get_plan_catalog(db: Session = Depends(get_db)) -> list[PlanOut]:
    return [serialize_plan(plan) for plan in list_plans(db)]


@app.get("/plans/{plan_id}/quote", response_model=CostBreakdownOut)
def quote_plan(
    plan_id: str,
    beds: int = Query(),
    branches: int = Query(default=1),
    db: Session = Depends(get_db),
) -> CostBreakdownOut:
    plan = require_plan(db, plan_id)
    return CostBreakdownOut.model_validate(calculate_cost(plan, beds, branches))


@app.get("/tenants/{tenant_id}/subscription", response_model=SubscriptionOut)
def get_subscription(tenant_id: str, db: Session = Depends(get_db)) -> SubscriptionOut:
    return serialize_subscription(require_subscription(db, tenant_id))


@app.get("/tenants/{tenant_id}/subscription/history", response_model=HistoryOut)
def get_subscription_history(tenant_id: str, db: Session = Depends(get_db)) -> HistoryOut:
    return HistoryOut(
        subscriptions=[serialize_subscription(record) for record in list_subscriptions(db, tenant_id)],
        activities=[ActivityOut.model_validate(activity) for activity in list_activities(db, tenant_id)],
    )


@app.post(
    "/tenants/{tenant_id}/subscription/trial",
    response_model=SubscriptionOut,
    status_code=status.HTTP_201_CREATED,
)
def start_trial(tenant_id: str, payload: TrialRequest, db: Session = Depends(get_db)) -> SubscriptionOut:
    plan = require_plan(db, payload.plan_id)
    current = get_current_subscription(db, tenant_id)
    if current and current.status == SubscriptionStatus.TRIAL and current.plan_id == plan.id:
        return serialize_subscription(current)
    if list_subscriptions(db, tenant_id):
        raise InvalidTransition(
            "Tenant has already used its trial.",
            current_status=current.status.value if current else None,
            requested="start_trial",
        )

    record = lifecycle.start_trial(
        tenant_id,
        plan,
        utc_now(),
        onboarding=payload.onboarding,
        auto_renew=payload.auto_renew,
    )
    record = insert_record(db, record)
    db.commit()
    return serialize_subscription(record)


@app.post("/tenants/{tenant_id}/subscription", response_model=SubscriptionOut)
def purchase_plan(tenant_id: str, payload: PurchaseRequest, db: Session = Depends(get_db)) -> SubscriptionOut:
    plan = require_plan(db, payload.plan_id)
    now = utc_now()
    current = get_current_subscription(db, tenant_id)

    if current is None:
        record = lifecycle.subscribe(
            tenant_id,
            plan,
            now,
            beds=payload.beds,
            branches=payload.branches,
            auto_renew=payload.auto_renew,
        )
        record = insert_record(db, record)
    else:
        require_version(current, payload.version)
        if current.status == SubscriptionStatus.TRIAL:
            after = lifecycle.activate(
                current,
                plan,
                now,
                beds=payload.beds,
                branches=payload.branches,
                auto_renew=payload.auto_renew,
            )
        else:
            after = lifecycle.resubscribe(
                current,
                plan,
                now,
                beds=payload.beds,
                branches=payload.branches,
                auto_renew=payload.auto_renew,
            )
        record = save_transition(db, current, after)

    db.commit()
    return serialize_subscription(record)


@app.post("/tenants/{tenant_id}/subscription/cancel", response_model=CancelOut)
def cancel_subscription(tenant_id: str, payload: CancelRequest, db: Session = Depends(get_db)) -> CancelOut:
    current = require_subscription(db, tenant_id)
    require_version(current, payload.version)
    record = save_transition(db, current, lifecycle.cancel(current, payload.reason, utc_now()))
    db.commit()
    return CancelOut(
        subscription=serialize_subscription(record),
        outbound=lifecycle.cancellation_payload(record.cancellation_reason),
    )


@app.post("/tenants/{tenant_id}/subscription/change-plan", response_model=PlanChangeOut)
def change_plan(tenant_id: str, payload: ChangePlanRequest, db: Session = Depends(get_db)) -> PlanChangeOut:
    current = require_subscription(db, tenant_id)
    require_version(current, payload.version)
    current_plan = require_plan(db, current.plan_id) if current.plan_id else None
    if current_plan is None:
        raise InvalidTransition(
            "Subscription has no plan to change from.",
            current_status=current.status.value,
            requested="change_plan",
        )
    target_plan = require_plan(db, payload.plan_id)

    change = lifecycle.change_plan(
        current,
        current_plan,
        target_plan,
        utc_now(),
        beds=payload.beds,
        branches=payload.branches,
    )
    superseded, record = save_plan_change(db, current, change)
    db.commit()
    return PlanChangeOut(
        applied=change.applied,
        superseded=serialize_subscription(superseded) if superseded else None,
        current=serialize_subscription(record),
    )


@app.post("/tenants/{tenant_id}/subscription/top-up", response_model=TopUpOut)
def top_up_subscription(tenant_id: str, payload: TopUpRequest, db: Session = Depends(get_db)) -> TopUpOut:
    current = require_subscription(db, tenant_id)
    require_version(current, payload.version)
    plan = require_plan(db, current.plan_id) if current.plan_id else None
    if plan is None:
        raise InvalidTransition(
            "Subscription has no plan to top up.",
            current_status=current.status.value,
            requested="top_up",
        )

    increase = lifecycle.top_up_target(current, payload.kind, payload.new_max)
    record = save_transition(db, current, lifecycle.top_up(current, plan, increase, utc_now()))
    db.commit()
    return TopUpOut(
        subscription=serialize_subscription(record),
        outbound=increase.to_payload(),
        cost=CostBreakdownOut.model_validate(calculate_cost(plan, record.total_beds, record.total_branches)),
    )


@app.post("/tenants/{tenant_id}/capacity-check", response_model=CapacityCheckOut)
def capacity_check(
    tenant_id: str,
    payload: CapacityCheckRequest,
    db: Session = Depends(get_db),
) -> CapacityCheckOut:
    subscription = get_current_subscription(db, tenant_id)
    plan = plan_for(db, subscription)
    tier = payload.tier or derive_tenant_tier(subscription, plan)

    result = check_capacity(subscription, payload.kind, payload.delta, tier)
    quote = quote_overage(plan, subscription, result) if plan and subscription else None
    approaching = is_approaching_limit(
        subscription,
        payload.kind,
        get_settings().approaching_limit_threshold,
    )
    return serialize_check(result, approaching, quote)


@app.post("/tenants/{tenant_id}/bulk-upload-check", response_model=BulkUploadOut)
def bulk_upload_check(
    tenant_id: str,
    payload: BulkUploadRequest,
    db: Session = Depends(get_db),
) -> BulkUploadOut:
    subscription = get_current_subscription(db, tenant_id)
    plan = plan_for(db, subscription)
    check = check_bulk_upload(
        subscription,
        plan,
        payload.rooms,
        derive_tenant_tier(subscription, plan),
        default_batch_limit=get_settings().default_bulk_upload_batch_limit,
    )
    return BulkUploadOut(
        batch_beds=check.batch_beds,
        batch_limit=check.batch_limit,
        module_enabled=check.module_enabled,
        within_batch_limit=check.within_batch_limit,
        can_proceed=check.can_proceed,
        capacity=serialize_check(check.capacity),
    )


@app.post("/tenants/{tenant_id}/usage", response_model=UsageOut)
def record_usage(tenant_id: str, payload: UsageDeltaRequest, db: Session = Depends(get_db)) -> UsageOut:
    usage = SqlUsageLedger(db).record_usage_delta(tenant_id, payload.kind, payload.delta)
    db.commit()
    return UsageOut.model_validate(usage)


@app.post("/subscriptions/expiry-sweep", response_model=ExpirySweepOut)
def expiry_sweep(payload: ExpirySweepRequest, db: Session = Depends(get_db)) -> ExpirySweepOut:
    paid = set(payload.paid_subscription_ids)
    now = payload.now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    changed = run_expiry_sweep(
        db,
        now,
        renewal_paid=lambda record: record.id in paid,
    )
    db.commit()
    return ExpirySweepOut(changed=[serialize_subscription(record) for record in changed])
