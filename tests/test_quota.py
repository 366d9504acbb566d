from datetime import datetime, timedelta, timezone

from archon_agent.quota import (
    PLANS,
    InMemoryQuotaStore,
    Plan,
    UsageRecord,
    check_quota,
    get_plan,
    record_usage,
    start_of_month,
)

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def _fill(store: InMemoryQuotaStore, count: int, org_id: str = "org") -> None:
    for _ in range(count):
        store.add(
            UsageRecord(
                org_id=org_id,
                user_id="u",
                repo="o/r",
                model="m",
                created_at=NOW - timedelta(days=1),
            )
        )


def test_plan_limits() -> None:
    assert PLANS["free"].requests_per_month == 50
    assert PLANS["pro"].requests_per_month == 500
    assert PLANS["team"].requests_per_month == 2000
    assert get_plan("unknown") is PLANS["free"]


def test_quota_boundary() -> None:
    store = InMemoryQuotaStore()
    _fill(store, 49)
    status = check_quota(store, "org", PLANS["free"], now=NOW)
    assert (status.allowed, status.used, status.limit) == (True, 49, 50)

    _fill(store, 1)
    status = check_quota(store, "org", PLANS["free"], now=NOW)
    assert (status.allowed, status.used) == (False, 50)


def test_unlimited_plan() -> None:
    store = InMemoryQuotaStore()
    _fill(store, 10_000)
    unlimited = Plan(
        name="Ent", tier="pro", requests_per_month=-1, max_tokens=8192, private_repos=True
    )
    status = check_quota(store, "org", unlimited, now=NOW)
    assert (status.allowed, status.used, status.limit) == (True, 0, -1)


def test_usage_is_counted_per_org_and_month() -> None:
    store = InMemoryQuotaStore()
    _fill(store, 3, org_id="other")
    store.add(
        UsageRecord(
            org_id="org",
            user_id="u",
            repo="o/r",
            model="m",
            created_at=start_of_month(NOW) - timedelta(seconds=1),
        )
    )
    assert check_quota(store, "org", PLANS["free"], now=NOW).used == 0


def test_record_usage_appends() -> None:
    store = InMemoryQuotaStore()
    record = record_usage(store, org_id="org", user_id="u", repo="o/r", model="m")
    assert store.records == [record]
    assert check_quota(store, "org", PLANS["free"]).used == 1
