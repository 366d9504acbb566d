"""
Monthly request quotas for the hosted intake service.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

UNLIMITED = -1


@dataclass(frozen=True)
class Plan:
    name: str
    tier: str
    requests_per_month: int
    max_tokens: int
    private_repos: bool


PLANS: dict[str, Plan] = {
    "free": Plan(
        name="Free", tier="free", requests_per_month=50, max_tokens=2048, private_repos=False
    ),
    "pro": Plan(
        name="Pro", tier="pro", requests_per_month=500, max_tokens=8192, private_repos=True
    ),
    "team": Plan(
        name="Team", tier="pro", requests_per_month=2000, max_tokens=8192, private_repos=True
    ),
}


def get_plan(name: Optional[str]) -> Plan:
    return PLANS.get(name or "free") or PLANS["free"]


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    used: int
    limit: int


@dataclass(frozen=True)
class UsageRecord:
    org_id: str
    user_id: str
    repo: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class QuotaStore(Protocol):
    def count_since(self, org_id: str, since: datetime) -> int: ...

    def add(self, record: UsageRecord) -> None: ...


class InMemoryQuotaStore:
    """Process-local usage ledger."""

    def __init__(self) -> None:
        self._records: list[UsageRecord] = []
        self._lock = threading.Lock()

    @property
    def records(self) -> list[UsageRecord]:
        with self._lock:
            return list(self._records)

    def count_since(self, org_id: str, since: datetime) -> int:
        with self._lock:
            return sum(
                1
                for record in self._records
                if record.org_id == org_id and record.created_at > since
            )

    def add(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)


def start_of_month(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def check_quota(
    store: QuotaStore, org_id: str, plan: Plan, *, now: Optional[datetime] = None
) -> QuotaStatus:
    if plan.requests_per_month == UNLIMITED:
        return QuotaStatus(allowed=True, used=0, limit=UNLIMITED)
    used = store.count_since(org_id, start_of_month(now))
    return QuotaStatus(
        allowed=used < plan.requests_per_month,
        used=used,
        limit=plan.requests_per_month,
    )


def record_usage(
    store: QuotaStore,
    *,
    org_id: str,
    user_id: str,
    repo: str,
    model: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
) -> UsageRecord:
    record = UsageRecord(
        org_id=org_id,
        user_id=user_id,
        repo=repo,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )
    store.add(record)
    return record


__all__ = [
    "InMemoryQuotaStore",
    "PLANS",
    "Plan",
    "QuotaStatus",
    "QuotaStore",
    "UNLIMITED",
    "UsageRecord",
    "check_quota",
    "get_plan",
    "record_usage",
    "start_of_month",
]
