from datetime import timedelta

import pytest

from dealclub.core.config import settings
from dealclub.features.access.contracts import Admission, AdmissionAction, Denial, DenialReason
from dealclub.features.access.service import admit, check_admission, preview_admission
from dealclub.features.plans.service import deactivate_plan
from dealclub.features.subscribers.service import set_plan_expiry
from dealclub.models.plan import Plan, PlanType
from dealclub.models.subscriber import Subscriber, SubscriberKind, SubscriberStatus
from dealclub.tests.factories import make_business, make_user

GOLD = Plan(key="gold", name="Gold", type=PlanType.USER, priority=3, redemption_limit=50)
DIAMOND = Plan(key="diamond", name="Diamond", type=PlanType.USER, priority=4, redemption_limit=-1)


def _user(status=SubscriberStatus.APPROVED, plan_expiry=None, custom_limit=None):
    return Subscriber(
        subscriber_id="u1",
        kind=SubscriberKind.USER,
        plan_key="gold",
        status=status,
        plan_expiry=plan_expiry,
        custom_limit=custom_limit,
    )


@pytest.mark.parametrize("used", [0, 50, 51, 5000])
def test_unlimited_plan_always_admitted(now, used):
    result = check_admission(_user(), DIAMOND, AdmissionAction.REDEEM_DEAL, used, now)
    assert isinstance(result, Admission)


@pytest.mark.parametrize("used", [0, 100, 9999])
def test_unlimited_override_always_admitted(now, used):
    result = check_admission(_user(custom_limit=-1), GOLD, AdmissionAction.REDEEM_DEAL, used, now)
    assert isinstance(result, Admission)


@pytest.mark.parametrize("used,admitted", [(0, True), (49, True), (50, False), (60, False)])
def test_finite_limit(now, used, admitted):
    result = check_admission(_user(), GOLD, AdmissionAction.REDEEM_DEAL, used, now)
    assert result.allowed is admitted
    if not admitted:
        assert result.reason == DenialReason.LIMIT_REACHED
        assert (result.limit, result.used) == (50, used)


@pytest.mark.parametrize(
    "status", [SubscriberStatus.PENDING, SubscriberStatus.REJECTED, SubscriberStatus.SUSPENDED]
)
def test_non_approved_status_denied_first(now, status):
    # Status is checked before expiry and limits
    result = check_admission(
        _user(status=status, plan_expiry=now - timedelta(days=1)), DIAMOND, AdmissionAction.REDEEM_DEAL, 0, now
    )
    assert result.reason == DenialReason.INACTIVE_SUBSCRIBER
    assert result.details["status"] == status.value


def test_expired_plan_denied_before_limit(now):
    result = check_admission(
        _user(plan_expiry=now - timedelta(seconds=1)), DIAMOND, AdmissionAction.REDEEM_DEAL, 0, now
    )
    assert result.reason == DenialReason.PLAN_EXPIRED


def test_future_expiry_admitted(now):
    result = check_admission(_user(plan_expiry=now + timedelta(days=1)), GOLD, AdmissionAction.REDEEM_DEAL, 0, now)
    assert isinstance(result, Admission)


def test_wrong_kind_for_action_forbidden(now):
    result = check_admission(_user(), GOLD, AdmissionAction.POST_DEAL, 0, now)
    assert result.reason == DenialReason.FORBIDDEN


def test_limit_denial_suggests_higher_plans(memory_repo, now):
    make_user(memory_repo, "u-zero", now=now, plan_key="community", custom_limit=0)

    with memory_repo.unit_of_work() as uow:
        result = admit(uow, uow.get_subscriber("u-zero"), AdmissionAction.REDEEM_DEAL, now=now)

    assert isinstance(result, Denial)
    assert result.reason == DenialReason.LIMIT_REACHED
    assert [s.key for s in result.upgrade_suggestions] == ["silver", "gold", "diamond"]
    assert result.upgrade_suggestions[-1].limit == "unlimited"
    assert result.to_dict()["upgrade_suggestions"][0]["key"] == "silver"


def test_suggestions_capped_and_same_type(memory_repo, now, monkeypatch):
    monkeypatch.setattr(settings, "UPGRADE_SUGGESTION_LIMIT", 2)
    make_business(memory_repo, "b-zero", "owner-1", now=now, plan_key="basic_business", custom_limit=0)

    with memory_repo.unit_of_work() as uow:
        result = admit(uow, uow.get_subscriber("b-zero"), AdmissionAction.POST_DEAL, now=now)

    keys = [s.key for s in result.upgrade_suggestions]
    assert keys == ["standard_business", "premium_business"]
    assert result.upgrade_suggestions[0].limit == 10


def test_top_plan_has_no_suggestions(memory_repo, now):
    make_user(memory_repo, "u-top", now=now, plan_key="diamond", custom_limit=0)

    result = preview_admission("u-top", AdmissionAction.REDEEM_DEAL, now=now, repo=memory_repo)

    assert result.reason == DenialReason.LIMIT_REACHED
    assert result.upgrade_suggestions == []


def test_inactive_plan_denies_by_default(memory_repo, now):
    make_user(memory_repo, "u-retired", now=now, plan_key="gold")
    assert deactivate_plan("gold", repo=memory_repo) == "soft"

    result = preview_admission("u-retired", AdmissionAction.REDEEM_DEAL, now=now, repo=memory_repo)

    assert result.reason == DenialReason.LIMIT_REACHED
    assert result.limit == 0


def test_preview_reports_expiry(memory_repo, now):
    make_user(memory_repo, "u-lapsed", now=now)
    set_plan_expiry("u-lapsed", now - timedelta(days=3), repo=memory_repo)

    result = preview_admission("u-lapsed", AdmissionAction.REDEEM_DEAL, now=now, repo=memory_repo)

    assert result.reason == DenialReason.PLAN_EXPIRED
