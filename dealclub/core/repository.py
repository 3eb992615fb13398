"""
dealclub/core/repository.py

Storage interface used by every feature service.

A repository hands out units of work. Each unit of work is one database
transaction; reads, usage counts and writes issued through it commit or roll
back together. Row locks (`lock=True`) map to SELECT ... FOR UPDATE on
Postgres; on SQLite the whole transaction already holds the write lock.

Services accept `repo=` so tests can pass an in-memory fake with the same
surface (see dealclub/tests/fakes.py).
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from dealclub.core.database import deals, get_engine, plans, redemptions, subscribers
from dealclub.core.errors import DuplicatePendingRequestError, StorageUnavailableError
from dealclub.core.logging import log_event
from dealclub.models.deal import Deal, DealStatus
from dealclub.models.plan import BillingCycle, Plan, PlanType
from dealclub.models.redemption import Redemption, RedemptionStatus
from dealclub.models.subscriber import Subscriber, SubscriberKind, SubscriberStatus


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC. SQLite hands back naive datetimes."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _plan_from_row(row) -> Plan:
    return Plan(
        key=row.plan_key,
        name=row.name,
        type=PlanType(row.plan_type),
        priority=row.priority,
        posting_limit=row.posting_limit,
        redemption_limit=row.redemption_limit,
        is_active=bool(row.is_active),
        billing_cycle=BillingCycle(row.billing_cycle),
        sort_order=row.sort_order,
    )


def _subscriber_from_row(row) -> Subscriber:
    return Subscriber(
        subscriber_id=row.subscriber_id,
        kind=SubscriberKind(row.kind),
        plan_key=row.plan_key,
        plan_expiry=_utc(row.plan_expiry),
        custom_limit=row.custom_limit,
        status=SubscriberStatus(row.status),
        display_name=row.display_name,
        owner_user_id=row.owner_user_id,
        created_at=_utc(row.created_at),
    )


def _deal_from_row(row) -> Deal:
    return Deal(
        deal_id=row.deal_id,
        business_id=row.business_id,
        title=row.title,
        description=row.description,
        status=DealStatus(row.status),
        member_limit=row.member_limit,
        max_redemptions=row.max_redemptions,
        required_priority=row.required_priority,
        valid_until=_utc(row.valid_until),
        rejection_reason=row.rejection_reason,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
        deleted_at=_utc(row.deleted_at),
    )


def _redemption_from_row(row) -> Redemption:
    return Redemption(
        redemption_id=row.redemption_id,
        deal_id=row.deal_id,
        subscriber_id=row.subscriber_id,
        status=RedemptionStatus(row.status),
        redemption_code=row.redemption_code,
        requested_at=_utc(row.requested_at),
        decided_at=_utc(row.decided_at),
        decided_by=row.decided_by,
        rejection_reason=row.rejection_reason,
    )


def _values(fields: dict) -> dict:
    """Convert enums and datetimes into column values."""
    out = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = _utc(value)
        out[key] = value
    return out


class SqlUnitOfWork:
    """Reads and writes bound to one open transaction."""

    def __init__(self, conn: Connection):
        self.conn = conn

    def _lockable(self, query, lock: bool):
        return query.with_for_update() if lock else query

    # ---- plans -------------------------------------------------------------

    def find_plan(self, key: str, plan_type: Optional[PlanType] = None, active_only: bool = True) -> Optional[Plan]:
        query = select(plans).where(plans.c.plan_key == key)
        if plan_type is not None:
            query = query.where(plans.c.plan_type == plan_type.value)
        if active_only:
            query = query.where(plans.c.is_active.is_(True))
        row = self.conn.execute(query).first()
        return _plan_from_row(row) if row else None

    def list_plans(
        self,
        plan_type: Optional[PlanType] = None,
        active_only: bool = True,
        min_priority_exclusive: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Plan]:
        query = select(plans)
        if plan_type is not None:
            query = query.where(plans.c.plan_type == plan_type.value)
        if active_only:
            query = query.where(plans.c.is_active.is_(True))
        if min_priority_exclusive is not None:
            query = query.where(plans.c.priority > min_priority_exclusive)
        query = query.order_by(plans.c.priority, plans.c.sort_order, plans.c.plan_key)
        if limit is not None:
            query = query.limit(limit)
        return [_plan_from_row(row) for row in self.conn.execute(query).all()]

    def insert_plan(self, plan: Plan, created_at: datetime) -> None:
        self.conn.execute(
            insert(plans).values(
                plan_key=plan.key,
                name=plan.name,
                plan_type=plan.type.value,
                priority=plan.priority,
                posting_limit=plan.posting_limit,
                redemption_limit=plan.redemption_limit,
                is_active=plan.is_active,
                billing_cycle=plan.billing_cycle.value,
                sort_order=plan.sort_order,
                created_at=_utc(created_at),
            )
        )

    def update_plan_active(self, key: str, is_active: bool) -> None:
        self.conn.execute(update(plans).where(plans.c.plan_key == key).values(is_active=is_active))

    def delete_plan(self, key: str) -> None:
        self.conn.execute(delete(plans).where(plans.c.plan_key == key))

    def count_plan_references(self, key: str) -> int:
        return self.conn.execute(
            select(func.count()).select_from(subscribers).where(subscribers.c.plan_key == key)
        ).scalar_one()

    # ---- subscribers -------------------------------------------------------

    def get_subscriber(self, subscriber_id: str, lock: bool = False) -> Optional[Subscriber]:
        query = select(subscribers).where(subscribers.c.subscriber_id == subscriber_id)
        row = self.conn.execute(self._lockable(query, lock)).first()
        return _subscriber_from_row(row) if row else None

    def get_business_by_owner(self, owner_user_id: str, lock: bool = False) -> Optional[Subscriber]:
        query = (
            select(subscribers)
            .where(
                and_(
                    subscribers.c.owner_user_id == owner_user_id,
                    subscribers.c.kind == SubscriberKind.BUSINESS.value,
                )
            )
            .order_by(subscribers.c.created_at)
            .limit(1)
        )
        row = self.conn.execute(self._lockable(query, lock)).first()
        return _subscriber_from_row(row) if row else None

    def insert_subscriber(self, subscriber: Subscriber) -> None:
        self.conn.execute(
            insert(subscribers).values(
                _values(
                    {
                        "subscriber_id": subscriber.subscriber_id,
                        "kind": subscriber.kind,
                        "plan_key": subscriber.plan_key,
                        "plan_expiry": subscriber.plan_expiry,
                        "custom_limit": subscriber.custom_limit,
                        "status": subscriber.status,
                        "display_name": subscriber.display_name,
                        "owner_user_id": subscriber.owner_user_id,
                        "created_at": subscriber.created_at,
                    }
                )
            )
        )

    def update_subscriber(self, subscriber_id: str, **fields) -> None:
        self.conn.execute(
            update(subscribers)
            .where(subscribers.c.subscriber_id == subscriber_id)
            .values(_values(fields))
        )

    # ---- deals -------------------------------------------------------------

    def insert_deal(self, deal: Deal) -> None:
        self.conn.execute(
            insert(deals).values(
                _values(
                    {
                        "deal_id": deal.deal_id,
                        "business_id": deal.business_id,
                        "title": deal.title,
                        "description": deal.description,
                        "status": deal.status,
                        "member_limit": deal.member_limit,
                        "max_redemptions": deal.max_redemptions,
                        "required_priority": deal.required_priority,
                        "valid_until": deal.valid_until,
                        "rejection_reason": deal.rejection_reason,
                        "created_at": deal.created_at,
                        "updated_at": deal.updated_at,
                        "deleted_at": deal.deleted_at,
                    }
                )
            )
        )

    def get_deal(self, deal_id: str, lock: bool = False) -> Optional[Deal]:
        query = select(deals).where(deals.c.deal_id == deal_id)
        row = self.conn.execute(self._lockable(query, lock)).first()
        return _deal_from_row(row) if row else None

    def update_deal(self, deal_id: str, **fields) -> None:
        self.conn.execute(update(deals).where(deals.c.deal_id == deal_id).values(_values(fields)))

    def list_deals(
        self,
        business_id: Optional[str] = None,
        statuses: Optional[List[DealStatus]] = None,
        max_required_priority: Optional[int] = None,
        include_deleted: bool = False,
        open_at: Optional[datetime] = None,
        elapsed_at: Optional[datetime] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> List[Deal]:
        """
        open_at keeps deals whose window is still running at that instant;
        elapsed_at keeps deals whose window has ended by then.
        """
        query = select(deals)
        if business_id is not None:
            query = query.where(deals.c.business_id == business_id)
        if statuses:
            query = query.where(deals.c.status.in_([s.value for s in statuses]))
        if max_required_priority is not None:
            query = query.where(deals.c.required_priority <= max_required_priority)
        if not include_deleted:
            query = query.where(deals.c.deleted_at.is_(None))
        if open_at is not None:
            query = query.where(or_(deals.c.valid_until.is_(None), deals.c.valid_until > _utc(open_at)))
        if elapsed_at is not None:
            query = query.where(deals.c.valid_until <= _utc(elapsed_at))
        query = query.order_by(deals.c.created_at.desc(), deals.c.deal_id).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return [_deal_from_row(row) for row in self.conn.execute(query).all()]

    def count_deals_by_status(self, business_id: str) -> Dict[DealStatus, int]:
        """Live (non-deleted) deals of the business grouped by status."""
        rows = self.conn.execute(
            select(deals.c.status, func.count())
            .where(and_(deals.c.business_id == business_id, deals.c.deleted_at.is_(None)))
            .group_by(deals.c.status)
        ).all()
        return {DealStatus(status): count for status, count in rows}

    def count_deleted_deals(self, business_id: str) -> int:
        return self.conn.execute(
            select(func.count())
            .select_from(deals)
            .where(and_(deals.c.business_id == business_id, deals.c.deleted_at.is_not(None)))
        ).scalar_one()

    def count_deals_created(self, business_id: str, start: datetime, end: datetime) -> int:
        """Deals created in [start, end), whatever their status or deletion."""
        return self.conn.execute(
            select(func.count())
            .select_from(deals)
            .where(
                and_(
                    deals.c.business_id == business_id,
                    deals.c.created_at >= _utc(start),
                    deals.c.created_at < _utc(end),
                )
            )
        ).scalar_one()

    # ---- redemptions -------------------------------------------------------

    def insert_redemption(self, redemption: Redemption) -> None:
        """Insert a redemption; a second pending row for the pair raises DuplicatePendingRequestError."""
        statement = insert(redemptions).values(
            _values(
                {
                    "redemption_id": redemption.redemption_id,
                    "deal_id": redemption.deal_id,
                    "subscriber_id": redemption.subscriber_id,
                    "status": redemption.status,
                    "redemption_code": redemption.redemption_code,
                    "requested_at": redemption.requested_at,
                    "decided_at": redemption.decided_at,
                    "decided_by": redemption.decided_by,
                    "rejection_reason": redemption.rejection_reason,
                }
            )
        )
        try:
            with self.conn.begin_nested():
                self.conn.execute(statement)
        except IntegrityError as exc:
            raise DuplicatePendingRequestError(
                "You already have a pending request for this deal",
                details={"deal_id": redemption.deal_id},
            ) from exc

    def get_redemption(self, redemption_id: str, lock: bool = False) -> Optional[Redemption]:
        query = select(redemptions).where(redemptions.c.redemption_id == redemption_id)
        row = self.conn.execute(self._lockable(query, lock)).first()
        return _redemption_from_row(row) if row else None

    def update_redemption(self, redemption_id: str, **fields) -> None:
        self.conn.execute(
            update(redemptions)
            .where(redemptions.c.redemption_id == redemption_id)
            .values(_values(fields))
        )

    def find_pending_redemption(self, deal_id: str, subscriber_id: str) -> Optional[Redemption]:
        row = self.conn.execute(
            select(redemptions).where(
                and_(
                    redemptions.c.deal_id == deal_id,
                    redemptions.c.subscriber_id == subscriber_id,
                    redemptions.c.status == RedemptionStatus.PENDING.value,
                )
            )
        ).first()
        return _redemption_from_row(row) if row else None

    def count_approved_redemptions(self, subscriber_id: str, start: datetime, end: datetime) -> int:
        """Approved redemptions decided in [start, end)."""
        return self.conn.execute(
            select(func.count())
            .select_from(redemptions)
            .where(
                and_(
                    redemptions.c.subscriber_id == subscriber_id,
                    redemptions.c.status == RedemptionStatus.APPROVED.value,
                    redemptions.c.decided_at >= _utc(start),
                    redemptions.c.decided_at < _utc(end),
                )
            )
        ).scalar_one()

    def count_deal_approvals(self, deal_id: str, subscriber_id: Optional[str] = None) -> int:
        query = select(func.count()).select_from(redemptions).where(
            and_(
                redemptions.c.deal_id == deal_id,
                redemptions.c.status == RedemptionStatus.APPROVED.value,
            )
        )
        if subscriber_id is not None:
            query = query.where(redemptions.c.subscriber_id == subscriber_id)
        return self.conn.execute(query).scalar_one()

    def count_distinct_redeemers(self, deal_id: str) -> int:
        return self.conn.execute(
            select(func.count(redemptions.c.subscriber_id.distinct())).where(
                and_(
                    redemptions.c.deal_id == deal_id,
                    redemptions.c.status == RedemptionStatus.APPROVED.value,
                )
            )
        ).scalar_one()

    def count_business_redemptions(self, business_id: str, status: RedemptionStatus) -> int:
        """Redemptions in `status` across the business's live deals."""
        return self.conn.execute(
            select(func.count())
            .select_from(redemptions.join(deals, redemptions.c.deal_id == deals.c.deal_id))
            .where(
                and_(
                    deals.c.business_id == business_id,
                    deals.c.deleted_at.is_(None),
                    redemptions.c.status == status.value,
                )
            )
        ).scalar_one()

    def list_redemptions(
        self,
        subscriber_id: Optional[str] = None,
        deal_id: Optional[str] = None,
        status: Optional[RedemptionStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Redemption]:
        query = select(redemptions)
        if subscriber_id is not None:
            query = query.where(redemptions.c.subscriber_id == subscriber_id)
        if deal_id is not None:
            query = query.where(redemptions.c.deal_id == deal_id)
        if status is not None:
            query = query.where(redemptions.c.status == status.value)
        query = (
            query.order_by(redemptions.c.requested_at.desc(), redemptions.c.redemption_id)
            .limit(limit)
            .offset(offset)
        )
        return [_redemption_from_row(row) for row in self.conn.execute(query).all()]


class SqlRepository:
    """Repository backed by a SQLAlchemy engine."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    @contextmanager
    def unit_of_work(self) -> Iterator[SqlUnitOfWork]:
        """Open a transaction; commit on success, roll back on any exception."""
        try:
            with self.engine.begin() as conn:
                yield SqlUnitOfWork(conn)
        except (OperationalError, InterfaceError) as exc:
            log_event(
                "error",
                "[storage] unavailable",
                error_code=type(exc).__name__,
            )
            raise StorageUnavailableError() from exc


_default_repository: Optional[SqlRepository] = None


def get_repository() -> SqlRepository:
    """Process-wide repository bound to the configured engine."""
    global _default_repository
    if _default_repository is None:
        _default_repository = SqlRepository()
    return _default_repository
