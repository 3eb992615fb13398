from datetime import datetime, timezone

import pytest

from dealclub.features.entitlements.service import (
    effective_limit,
    get_entitlement_summary,
    is_unlimited,
    period_bounds,
    period_key,
    remaining,
    usage_status,
    within_limit,
)
from dealclub.features.usage.periods import period_for
from dealclub.models.plan import Plan, PlanType
from dealclub.models.subscriber import Subscriber, SubscriberKind, SubscriberStatus
from dealclub.tests.factories import make_user


def _user(custom_limit=None):
    return Subscriber(
        subscriber_id="u1",
        kind=SubscriberKind.USER,
        plan_key="silver",
        status=SubscriberStatus.APPROVED,
        custom_limit=custom_limit,
    )


def _business(custom_limit=None):
    return Subscriber(
        subscriber_id="b1",
        kind=SubscriberKind.BUSINESS,
        plan_key="basic_business",
        status=SubscriberStatus.APPROVED,
        custom_limit=custom_limit,
    )


SILVER = Plan(key="silver", name="Silver", type=PlanType.USER, priority=2, redemption_limit=15)
BASIC = Plan(key="basic_business", name="Basic", type=PlanType.MERCHANT, priority=1, posting_limit=2)


def test_plan_limit_used_without_override():
    assert effective_limit(_user(), SILVER) == 15
    assert effective_limit(_business(), BASIC) == 2


@pytest.mark.parametrize("override", [-1, 0, 3, 100])
def test_custom_limit_takes_precedence(override):
    assert effective_limit(_user(override), SILVER) == override
    assert effective_limit(_business(override), BASIC) == override


def test_missing_plan_resolves_to_zero():
    assert effective_limit(_user(), None) == 0


def test_plan_without_limit_for_kind_resolves_to_zero():
    # A merchant plan defines no redemption limit
    assert effective_limit(_user(), BASIC) == 0


@pytest.mark.parametrize("used", [0, 1, 15, 10_000])
def test_unlimited_always_within_limit(used):
    assert is_unlimited(-1)
    assert within_limit(-1, used)
    assert remaining(-1, used) == "unlimited"


@pytest.mark.parametrize("limit", [0, 1, 2, 15])
@pytest.mark.parametrize("used", [0, 1, 2, 14, 15, 16])
def test_finite_limit_admits_iff_used_below_limit(limit, used):
    assert within_limit(limit, used) == (used < limit)


def test_usage_status_thresholds():
    assert usage_status(10, 0) == "ok"
    assert usage_status(10, 8) == "approaching_limit"
    assert usage_status(10, 10) == "at_limit"
    assert usage_status(-1, 999) == "ok"


def test_period_key_uses_configured_zone():
    moment = datetime(2026, 3, 31, 23, 30, tzinfo=timezone.utc)
    assert period_key(moment, "UTC") == "2026-03"
    # Already April in Tokyo
    assert period_key(moment, "Asia/Tokyo") == "2026-04"


def test_period_bounds_are_half_open_utc():
    period = period_bounds("2026-12", "UTC")
    assert period.start == datetime(2026, 12, 1, tzinfo=timezone.utc)
    assert period.end == datetime(2027, 1, 1, tzinfo=timezone.utc)
    assert period.contains(datetime(2026, 12, 31, 23, 59, 59, tzinfo=timezone.utc))
    assert not period.contains(period.end)


def test_period_bounds_follow_zone_offset():
    period = period_for(datetime(2026, 6, 15, tzinfo=timezone.utc), "Asia/Tokyo")
    assert period.key == "2026-06"
    assert period.start == datetime(2026, 5, 31, 15, 0, tzinfo=timezone.utc)


def test_invalid_period_key_rejected():
    with pytest.raises(ValueError):
        period_bounds("2026-13")
    with pytest.raises(ValueError):
        period_bounds("march")


def test_entitlement_summary_reports_override(memory_repo, now):
    make_user(memory_repo, "u-summary", now=now, custom_limit=-1)

    summary = get_entitlement_summary("u-summary", now=now, repo=memory_repo)

    assert summary["limit"] == "unlimited"
    assert summary["remaining"] == "unlimited"
    assert summary["override_applied"] is True
    assert summary["period"] == "2026-03"
    assert summary["status"] == "ok"
