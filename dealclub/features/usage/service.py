"""
dealclub/features/usage/service.py

Quota counters.

Usage is never stored. Every call counts qualifying rows inside the caller's
unit of work, so a count taken in the same transaction as the write it guards
sees the same data the write commits against.

- deals posted: Deal rows for the business created in the period
  (status and soft deletion are ignored)
- redemptions: Redemption rows for the user that were approved in the period
  (decision time, not request time)
"""

from dealclub.features.usage.periods import Period
from dealclub.models.subscriber import Subscriber, SubscriberKind


def count_deals_posted(uow, business_id: str, period: Period) -> int:
    return uow.count_deals_created(business_id, period.start, period.end)


def count_redemptions_approved(uow, user_id: str, period: Period) -> int:
    return uow.count_approved_redemptions(user_id, period.start, period.end)


def count_usage(uow, subscriber: Subscriber, period: Period) -> int:
    """Usage relevant to the subscriber's quota: posts for businesses, approvals for users."""
    if subscriber.kind == SubscriberKind.BUSINESS:
        return count_deals_posted(uow, subscriber.subscriber_id, period)
    return count_redemptions_approved(uow, subscriber.subscriber_id, period)


def count_distinct_redeemers(uow, deal_id: str) -> int:
    return uow.count_distinct_redeemers(deal_id)


def count_deal_approvals(uow, deal_id: str) -> int:
    return uow.count_deal_approvals(deal_id)


def is_approved_redeemer(uow, deal_id: str, user_id: str) -> bool:
    return uow.count_deal_approvals(deal_id, subscriber_id=user_id) > 0


def member_limit_reached(uow, deal) -> bool:
    """True if the deal's distinct approved redeemers already fill its member limit."""
    if deal.member_limit is None:
        return False
    return count_distinct_redeemers(uow, deal.deal_id) >= deal.member_limit
