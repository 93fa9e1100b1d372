"""Usage ledger contract.

CRUD collaborators call ``record_usage_delta`` only after their own write
succeeded. Counters are eventually consistent and never go below zero.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from .constants import CapacityKind
from .exceptions import InvalidArgument
from .logging import get_logger
from .quota import coerce_kind
from .records import Usage

logger = get_logger(__name__)


class UsageLedger(Protocol):
    def get_usage(self, tenant_id: str) -> Usage: ...

    def record_usage_delta(self, tenant_id: str, kind: CapacityKind | str, delta: int) -> Usage: ...


def _require_delta(delta: int) -> int:
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise InvalidArgument("delta must be an integer.", context={"delta": delta})
    return delta


def apply_usage_delta(usage: Usage, kind: CapacityKind | str, delta: int) -> Usage:
    kind = coerce_kind(kind)
    delta = _require_delta(delta)
    if kind == CapacityKind.BED:
        return replace(usage, beds_used=max(0, usage.beds_used + delta))
    return replace(usage, branches_used=max(0, usage.branches_used + delta))


class InMemoryUsageLedger:
    """Dict-backed ledger for library callers that keep their own storage."""

    def __init__(self, initial: dict[str, Usage] | None = None) -> None:
        self._usage: dict[str, Usage] = dict(initial or {})

    def get_usage(self, tenant_id: str) -> Usage:
        return self._usage.get(tenant_id, Usage())

    def record_usage_delta(self, tenant_id: str, kind: CapacityKind | str, delta: int) -> Usage:
        kind = coerce_kind(kind)
        usage = apply_usage_delta(self.get_usage(tenant_id), kind, delta)
        self._usage[tenant_id] = usage
        logger.debug("usage_recorded", tenant_id=tenant_id, kind=kind.value, delta=delta)
        return usage
