"""Subscription vocabulary and module policy definitions."""

from __future__ import annotations

import math
from enum import Enum
from typing import Final


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"


class CapacityKind(str, Enum):
    BED = "bed"
    BRANCH = "branch"


class TenantTier(str, Enum):
    TRIAL = "trial"
    FREE = "free"
    PAID = "paid"


class QuotaOutcome(str, Enum):
    ALLOWED = "allowed"
    CAPACITY_EXCEEDED = "capacity_exceeded"


class DenialReason(str, Enum):
    TRIAL_LIMIT = "trial_limit"
    FREE_LIMIT = "free_limit"
    PAID_LIMIT = "paid_limit"


UNLIMITED: Final[float] = math.inf

# Statuses a tenant's live record can hold; the rest tag superseded history.
LIVE_STATUSES: Final[frozenset[SubscriptionStatus]] = frozenset(
    {
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELLED,
    }
)

SUPERSEDED_STATUSES: Final[frozenset[SubscriptionStatus]] = frozenset(
    {SubscriptionStatus.UPGRADED, SubscriptionStatus.DOWNGRADED}
)

DENIAL_BY_TIER: Final[dict[TenantTier, DenialReason]] = {
    TenantTier.TRIAL: DenialReason.TRIAL_LIMIT,
    TenantTier.FREE: DenialReason.FREE_LIMIT,
    TenantTier.PAID: DenialReason.PAID_LIMIT,
}

KNOWN_MODULES: Final[frozenset[str]] = frozenset(
    {
        "bed_management",
        "resident_management",
        "payment_tracking",
        "ticket_management",
        "analytics_reports",
        "bulk_upload",
        "email_notifications",
        "sms_notifications",
        "multi_branch",
        "api_access",
    }
)

BULK_UPLOAD_MODULE: Final[str] = "bulk_upload"

DEFAULT_APPROACHING_THRESHOLD: Final[float] = 0.8


def is_valid_module(module: str) -> bool:
    return module in KNOWN_MODULES


def is_live_status(status: SubscriptionStatus) -> bool:
    return status in LIVE_STATUSES
