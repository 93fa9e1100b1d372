"""
Billing core exceptions.

Capacity denials are not exceptions: they are returned as
``QuotaOutcome.CAPACITY_EXCEEDED`` inside a ``QuotaCheckResult``.
"""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """
    Base billing error.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class InvalidArgument(BillingError):
    """Negative counts, unknown kinds or malformed plan data."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "INVALID_ARGUMENT",
            status_code=422,
            context=context,
            recovery_hint=recovery_hint,
        )


class InvalidPlan(InvalidArgument):
    """Plan catalog data violates pricing rules. Shown to operators only."""

    def __init__(self, violations: list[str], plan_id: str | None = None) -> None:
        context: dict[str, Any] = {"violations": violations}
        if plan_id:
            context["plan_id"] = plan_id
        super().__init__(
            "Invalid plan configuration: " + "; ".join(violations),
            context=context,
            recovery_hint="Fix the plan definition in the catalog",
        )
        self.error_code = "INVALID_PLAN"
        self.violations = violations


class InvalidTransition(BillingError):
    """A lifecycle guard rejected the requested transition."""

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        requested: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = dict(context or {})
        if current_status:
            ctx["current_status"] = current_status
        if requested:
            ctx["requested"] = requested
        super().__init__(
            message,
            "INVALID_TRANSITION",
            status_code=409,
            context=ctx,
            recovery_hint="Refresh the subscription and retry",
        )


class ConcurrentModification(BillingError):
    """A lifecycle write was computed against a stale record version."""

    def __init__(
        self,
        subscription_id: int | None,
        expected_version: int,
        actual_version: int | None = None,
    ):
        context: dict[str, Any] = {
            "subscription_id": subscription_id,
            "expected_version": expected_version,
        }
        if actual_version is not None:
            context["actual_version"] = actual_version
        super().__init__(
            "Subscription was modified by another request.",
            "CONCURRENT_MODIFICATION",
            status_code=409,
            context=context,
            recovery_hint="Please retry",
        )
