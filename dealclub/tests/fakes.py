"""
In-memory repository with the same unit-of-work surface as SqlRepository.

One lock serializes units of work (like SQLite's write lock). State is
snapshotted at the start of each unit of work and restored if it raises.
"""

import threading
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from dealclub.core.errors import DuplicatePendingRequestError
from dealclub.models.deal import Deal, DealStatus
from dealclub.models.plan import Plan, PlanType
from dealclub.models.redemption import Redemption, RedemptionStatus
from dealclub.models.subscriber import Subscriber, SubscriberKind


class _State:
    def __init__(self):
        self.plans: Dict[str, Plan] = {}
        self.subscribers: Dict[str, Subscriber] = {}
        self.deals: Dict[str, Deal] = {}
        self.redemptions: Dict[str, Redemption] = {}


class InMemoryUnitOfWork:
    def __init__(self, state: _State):
        self.state = state

    # plans
    def find_plan(self, key, plan_type: Optional[PlanType] = None, active_only: bool = True):
        plan = self.state.plans.get(key)
        if plan is None:
            return None
        if plan_type is not None and plan.type != plan_type:
            return None
        if active_only and not plan.is_active:
            return None
        return plan

    def list_plans(self, plan_type=None, active_only=True, min_priority_exclusive=None, limit=None):
        found = [
            p
            for p in self.state.plans.values()
            if (plan_type is None or p.type == plan_type)
            and (not active_only or p.is_active)
            and (min_priority_exclusive is None or p.priority > min_priority_exclusive)
        ]
        found.sort(key=lambda p: (p.priority, p.sort_order, p.key))
        return found[:limit] if limit is not None else found

    def insert_plan(self, plan: Plan, created_at: datetime) -> None:
        self.state.plans[plan.key] = plan

    def update_plan_active(self, key: str, is_active: bool) -> None:
        self.state.plans[key] = self.state.plans[key].model_copy(update={"is_active": is_active})

    def delete_plan(self, key: str) -> None:
        self.state.plans.pop(key, None)

    def count_plan_references(self, key: str) -> int:
        return sum(1 for s in self.state.subscribers.values() if s.plan_key == key)

    # subscribers
    def get_subscriber(self, subscriber_id, lock=False):
        return self.state.subscribers.get(subscriber_id)

    def get_business_by_owner(self, owner_user_id, lock=False):
        owned = [
            s
            for s in self.state.subscribers.values()
            if s.kind == SubscriberKind.BUSINESS and s.owner_user_id == owner_user_id
        ]
        owned.sort(key=lambda s: s.created_at)
        return owned[0] if owned else None

    def insert_subscriber(self, subscriber: Subscriber) -> None:
        self.state.subscribers[subscriber.subscriber_id] = subscriber

    def update_subscriber(self, subscriber_id, **fields) -> None:
        self.state.subscribers[subscriber_id] = self.state.subscribers[subscriber_id].model_copy(update=fields)

    # deals
    def insert_deal(self, deal: Deal) -> None:
        self.state.deals[deal.deal_id] = deal

    def get_deal(self, deal_id, lock=False):
        return self.state.deals.get(deal_id)

    def update_deal(self, deal_id, **fields) -> None:
        self.state.deals[deal_id] = self.state.deals[deal_id].model_copy(update=fields)

    def list_deals(
        self,
        business_id=None,
        statuses: Optional[List[DealStatus]] = None,
        max_required_priority=None,
        include_deleted=False,
        open_at=None,
        elapsed_at=None,
        limit=100,
        offset=0,
    ):
        found = [
            d
            for d in self.state.deals.values()
            if (business_id is None or d.business_id == business_id)
            and (not statuses or d.status in statuses)
            and (max_required_priority is None or d.required_priority <= max_required_priority)
            and (include_deleted or d.deleted_at is None)
            and (open_at is None or not d.window_elapsed(open_at))
            and (elapsed_at is None or (d.valid_until is not None and d.window_elapsed(elapsed_at)))
        ]
        found.sort(key=lambda d: d.created_at, reverse=True)
        return found[offset:] if limit is None else found[offset:offset + limit]

    def count_deals_by_status(self, business_id):
        counts = Counter(
            d.status
            for d in self.state.deals.values()
            if d.business_id == business_id and d.deleted_at is None
        )
        return dict(counts)

    def count_deleted_deals(self, business_id) -> int:
        return sum(
            1 for d in self.state.deals.values() if d.business_id == business_id and d.deleted_at is not None
        )

    def count_deals_created(self, business_id, start, end) -> int:
        return sum(
            1
            for d in self.state.deals.values()
            if d.business_id == business_id and start <= d.created_at < end
        )

    # redemptions
    def insert_redemption(self, redemption: Redemption) -> None:
        if redemption.status == RedemptionStatus.PENDING and self.find_pending_redemption(
            redemption.deal_id, redemption.subscriber_id
        ):
            raise DuplicatePendingRequestError("You already have a pending request for this deal")
        self.state.redemptions[redemption.redemption_id] = redemption

    def get_redemption(self, redemption_id, lock=False):
        return self.state.redemptions.get(redemption_id)

    def update_redemption(self, redemption_id, **fields) -> None:
        self.state.redemptions[redemption_id] = self.state.redemptions[redemption_id].model_copy(update=fields)

    def find_pending_redemption(self, deal_id, subscriber_id):
        for r in self.state.redemptions.values():
            if r.deal_id == deal_id and r.subscriber_id == subscriber_id and r.status == RedemptionStatus.PENDING:
                return r
        return None

    def _approved(self):
        return [r for r in self.state.redemptions.values() if r.status == RedemptionStatus.APPROVED]

    def count_approved_redemptions(self, subscriber_id, start, end) -> int:
        return sum(
            1
            for r in self._approved()
            if r.subscriber_id == subscriber_id and r.decided_at is not None and start <= r.decided_at < end
        )

    def count_deal_approvals(self, deal_id, subscriber_id=None) -> int:
        return sum(
            1
            for r in self._approved()
            if r.deal_id == deal_id and (subscriber_id is None or r.subscriber_id == subscriber_id)
        )

    def count_distinct_redeemers(self, deal_id) -> int:
        return len({r.subscriber_id for r in self._approved() if r.deal_id == deal_id})

    def count_business_redemptions(self, business_id, status) -> int:
        live = {
            d.deal_id
            for d in self.state.deals.values()
            if d.business_id == business_id and d.deleted_at is None
        }
        return sum(1 for r in self.state.redemptions.values() if r.deal_id in live and r.status == status)

    def list_redemptions(self, subscriber_id=None, deal_id=None, status=None, limit=100, offset=0):
        found = [
            r
            for r in self.state.redemptions.values()
            if (subscriber_id is None or r.subscriber_id == subscriber_id)
            and (deal_id is None or r.deal_id == deal_id)
            and (status is None or r.status == status)
        ]
        found.sort(key=lambda r: r.requested_at, reverse=True)
        return found[offset:offset + limit]


class InMemoryRepository:
    def __init__(self):
        self._state = _State()
        self._lock = threading.RLock()

    @contextmanager
    def unit_of_work(self):
        with self._lock:
            snapshot = {name: dict(table) for name, table in vars(self._state).items()}
            try:
                yield InMemoryUnitOfWork(self._state)
            except Exception:
                self._state.__dict__.update(snapshot)
                raise
