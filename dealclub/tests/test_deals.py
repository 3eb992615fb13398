from datetime import timedelta

from dealclub.core.config import settings
from dealclub.features.access.contracts import Denial, DenialReason
from dealclub.features.deals.service import (
    deactivate_deal,
    delete_deal,
    expire_elapsed_deals,
    get_deal,
    list_visible_deals,
    merchant_dashboard,
    request_deal_creation,
    review_deal,
    update_deal,
)
from dealclub.features.entitlements.service import get_entitlement_summary
from dealclub.features.notifications.service import hub
from dealclub.features.redemptions.service import decide_redemption, request_redemption
from dealclub.models.deal import DealStatus
from dealclub.models.redemption import Decision
from dealclub.models.subscriber import SubscriberStatus
from dealclub.tests.factories import make_active_deal, make_business, make_user


def test_created_deal_awaits_approval_and_notifies(repo, now, events):
    make_business(repo, "b-1", "owner-1", now=now)

    deal = request_deal_creation("b-1", {"title": "  Two for one  ", "member_limit": 5}, now=now, repo=repo)

    assert deal.status == DealStatus.PENDING_APPROVAL
    assert deal.title == "Two for one"
    assert get_deal(deal.deal_id, repo=repo).member_limit == 5
    hub.flush()
    assert [e.event_type for e in events] == ["deal.created"]
    assert events[0].payload["deal_id"] == deal.deal_id


def test_deal_active_immediately_when_review_disabled(repo, now, monkeypatch):
    monkeypatch.setattr(settings, "DEALS_REQUIRE_APPROVAL", False)
    make_business(repo, "b-2", "owner-2", now=now)

    deal = request_deal_creation("b-2", {"title": "Free coffee"}, now=now, repo=repo)

    assert deal.status == DealStatus.ACTIVE


def test_scenario_c_deleted_deal_still_counts(repo, now):
    make_business(repo, "b-basic", "owner-basic", now=now, plan_key="basic_business")
    first = request_deal_creation("b-basic", {"title": "Deal one"}, now=now, repo=repo)
    request_deal_creation("b-basic", {"title": "Deal two"}, now=now, repo=repo)
    delete_deal("owner-basic", first.deal_id, now=now, repo=repo)

    result = request_deal_creation("b-basic", {"title": "Deal three"}, now=now, repo=repo)

    assert isinstance(result, Denial)
    assert result.reason == DenialReason.LIMIT_REACHED
    assert (result.limit, result.used) == (2, 2)
    assert result.upgrade_suggestions[0].key == "standard_business"


def test_posting_quota_resets_next_month(repo, now):
    make_business(repo, "b-month", "owner-month", now=now, plan_key="basic_business")
    for title in ("March one", "March two"):
        request_deal_creation("b-month", {"title": title}, now=now, repo=repo)

    april = now + timedelta(days=20)
    result = request_deal_creation("b-month", {"title": "April one"}, now=april, repo=repo)

    assert not isinstance(result, Denial)
    summary = get_entitlement_summary("b-month", now=april, repo=repo)
    assert (summary["used"], summary["period"]) == (1, "2026-04")


def test_unapproved_business_cannot_post(repo, now):
    make_business(repo, "b-pending", "owner-p", now=now, status=SubscriberStatus.PENDING)

    result = request_deal_creation("b-pending", {"title": "Nope"}, now=now, repo=repo)

    assert result.reason == DenialReason.INACTIVE_SUBSCRIBER


def test_user_cannot_post_deals(repo, now):
    make_user(repo, "u-poster", now=now)

    result = request_deal_creation("u-poster", {"title": "Nope"}, now=now, repo=repo)

    assert result.reason == DenialReason.FORBIDDEN


def test_unknown_business_not_found(repo, now):
    result = request_deal_creation("b-ghost", {"title": "Nope"}, now=now, repo=repo)
    assert result.reason == DenialReason.NOT_FOUND


def test_invalid_draft_is_validation_error(repo, now):
    make_business(repo, "b-3", "owner-3", now=now)

    blank = request_deal_creation("b-3", {"title": "   "}, now=now, repo=repo)
    zero_cap = request_deal_creation("b-3", {"title": "Ok", "max_redemptions": 0}, now=now, repo=repo)
    past = request_deal_creation(
        "b-3", {"title": "Ok", "valid_until": (now - timedelta(days=1)).isoformat()}, now=now, repo=repo
    )

    assert blank.reason == DenialReason.VALIDATION_ERROR
    assert zero_cap.reason == DenialReason.VALIDATION_ERROR
    assert past.reason == DenialReason.VALIDATION_ERROR
    # Rejected drafts never reach storage, so nothing counts
    assert get_entitlement_summary("b-3", now=now, repo=repo)["used"] == 0


def test_edit_preserves_status(repo, now):
    make_business(repo, "b-4", "owner-4", now=now)
    deal = make_active_deal(repo, "b-4", now=now)

    updated = update_deal(
        "owner-4", deal.deal_id, {"title": "Updated", "description": "More detail"}, now=now, repo=repo
    )

    assert updated.status == DealStatus.ACTIVE
    assert updated.title == "Updated"
    assert updated.description == "More detail"


def test_edit_cannot_set_status(repo, now):
    make_business(repo, "b-5", "owner-5", now=now)
    deal = make_active_deal(repo, "b-5", now=now)

    result = update_deal("owner-5", deal.deal_id, {"status": "active"}, now=now, repo=repo)

    assert result.reason == DenialReason.VALIDATION_ERROR


def test_only_owner_can_edit_or_delete(repo, now):
    make_business(repo, "b-6", "owner-6", now=now)
    make_business(repo, "b-7", "owner-7", now=now)
    deal = make_active_deal(repo, "b-6", now=now)

    assert update_deal("owner-7", deal.deal_id, {"title": "Mine"}, now=now, repo=repo).reason == DenialReason.FORBIDDEN
    assert delete_deal("owner-7", deal.deal_id, now=now, repo=repo).reason == DenialReason.FORBIDDEN
    assert get_deal(deal.deal_id, repo=repo).title == deal.title


def test_deleted_deal_is_hidden(repo, now):
    make_business(repo, "b-8", "owner-8", now=now)
    deal = make_active_deal(repo, "b-8", now=now)

    delete_deal("owner-8", deal.deal_id, now=now, repo=repo)

    assert get_deal(deal.deal_id, repo=repo) is None
    assert delete_deal("owner-8", deal.deal_id, now=now, repo=repo).reason == DenialReason.NOT_FOUND


def test_review_transitions(repo, now):
    make_business(repo, "b-9", "owner-9", now=now)
    pending = request_deal_creation("b-9", {"title": "Review me"}, now=now, repo=repo)

    rejected = review_deal(pending.deal_id, approve=False, now=now, repo=repo)
    assert rejected.status == DealStatus.REJECTED
    assert rejected.rejection_reason == "No reason provided"

    again = review_deal(pending.deal_id, approve=True, now=now, repo=repo)
    assert again.reason == DenialReason.INVALID_TRANSITION


def test_inactive_deal_cannot_be_reactivated(repo, now):
    make_business(repo, "b-10", "owner-10", now=now)
    deal = make_active_deal(repo, "b-10", now=now)

    assert deactivate_deal("owner-10", deal.deal_id, now=now, repo=repo).status == DealStatus.INACTIVE
    assert review_deal(deal.deal_id, approve=True, now=now, repo=repo).reason == DenialReason.INVALID_TRANSITION


def test_expire_elapsed_deals(repo, now, events):
    make_business(repo, "b-11", "owner-11", now=now)
    short = make_active_deal(repo, "b-11", now=now, valid_until=(now + timedelta(days=1)).isoformat())
    lasting = make_active_deal(repo, "b-11", now=now, title="Long", valid_until=(now + timedelta(days=30)).isoformat())

    expired = expire_elapsed_deals(now=now + timedelta(days=2), repo=repo)

    assert expired == [short.deal_id]
    assert get_deal(short.deal_id, repo=repo).status == DealStatus.EXPIRED
    assert get_deal(lasting.deal_id, repo=repo).status == DealStatus.ACTIVE
    hub.flush()
    assert events[-1].event_type == "deal.expired"


def test_visible_deals_respect_plan_priority(repo, now):
    make_business(repo, "b-12", "owner-12", now=now)
    open_deal = make_active_deal(repo, "b-12", now=now, title="Everyone")
    gold_deal = make_active_deal(repo, "b-12", now=now, title="Gold only", required_priority=3)
    request_deal_creation("b-12", {"title": "Not reviewed"}, now=now, repo=repo)
    make_user(repo, "u-silver", now=now, plan_key="silver")
    make_user(repo, "u-gold", now=now, plan_key="gold")

    silver_view = {d.deal_id for d in list_visible_deals("u-silver", now=now, repo=repo)}
    gold_view = {d.deal_id for d in list_visible_deals("u-gold", now=now, repo=repo)}

    assert silver_view == {open_deal.deal_id}
    assert gold_view == {open_deal.deal_id, gold_deal.deal_id}


def test_suspended_user_cannot_browse(repo, now):
    make_user(repo, "u-susp", now=now, status=SubscriberStatus.SUSPENDED)

    result = list_visible_deals("u-susp", now=now, repo=repo)

    assert result.reason == DenialReason.INACTIVE_SUBSCRIBER


def test_merchant_dashboard(repo, now):
    make_business(repo, "b-13", "owner-13", now=now, plan_key="basic_business")
    make_active_deal(repo, "b-13", now=now)
    gone = request_deal_creation("b-13", {"title": "Gone"}, now=now, repo=repo)
    delete_deal("owner-13", gone.deal_id, now=now, repo=repo)

    dashboard = merchant_dashboard("owner-13", now=now, repo=repo)

    assert dashboard["business_id"] == "b-13"
    assert dashboard["deals_by_status"]["active"] == 1
    assert dashboard["deleted_deals"] == 1
    assert dashboard["posting_quota"]["used"] == 2
    assert dashboard["posting_quota"]["status"] == "at_limit"


def test_dashboard_without_business(repo, now):
    assert merchant_dashboard("nobody", now=now, repo=repo).reason == DenialReason.NOT_FOUND


def test_draft_defaults_required_priority_from_settings(repo, now, monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_REQUIRED_PRIORITY", 2)
    make_business(repo, "b-14", "owner-14", now=now)

    deal = request_deal_creation("b-14", {"title": "Members only"}, now=now, repo=repo)
    explicit = request_deal_creation("b-14", {"title": "Open", "required_priority": 1}, now=now, repo=repo)

    assert get_deal(deal.deal_id, repo=repo).required_priority == 2
    assert explicit.required_priority == 1


def test_visible_deals_page_skips_elapsed_windows(repo, now):
    make_business(repo, "b-15", "owner-15", now=now)
    lasting = make_active_deal(repo, "b-15", now=now, title="Lasting")
    make_active_deal(
        repo,
        "b-15",
        now=now + timedelta(minutes=1),
        title="Flash sale",
        valid_until=(now + timedelta(hours=1)).isoformat(),
    )
    make_user(repo, "u-15", now=now)

    page = list_visible_deals("u-15", now=now + timedelta(hours=2), limit=1, repo=repo)

    assert [d.deal_id for d in page] == [lasting.deal_id]


def test_merchant_dashboard_counts_redemptions(repo, now):
    make_business(repo, "b-16", "owner-16", now=now)
    deal = make_active_deal(repo, "b-16", now=now)
    for user_id in ("u-16a", "u-16b", "u-16c"):
        make_user(repo, user_id, now=now)
    first = request_redemption("u-16a", deal.deal_id, now=now, repo=repo)
    request_redemption("u-16b", deal.deal_id, now=now, repo=repo)
    request_redemption("u-16c", deal.deal_id, now=now, repo=repo)
    decide_redemption("owner-16", first.redemption_id, Decision.APPROVE, now=now, repo=repo)

    dashboard = merchant_dashboard("owner-16", now=now, repo=repo)

    assert dashboard["pending_redemptions"] == 2
    assert dashboard["approved_redemptions"] == 1
    assert dashboard["deals_by_status"]["active"] == 1
    assert dashboard["deals_by_status"]["expired"] == 0


def test_dashboard_counts_match_in_memory_repository(memory_repo, now):
    make_business(memory_repo, "b-17", "owner-17", now=now)
    make_active_deal(memory_repo, "b-17", now=now)
    request_deal_creation("b-17", {"title": "Queued"}, now=now, repo=memory_repo)

    dashboard = merchant_dashboard("owner-17", now=now, repo=memory_repo)

    assert dashboard["deals_by_status"]["active"] == 1
    assert dashboard["deals_by_status"]["pending_approval"] == 1
    assert (dashboard["pending_redemptions"], dashboard["approved_redemptions"]) == (0, 0)
