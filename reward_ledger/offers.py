from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from .config import LedgerSettings, get_settings
from .errors import InvalidStateError, ValidationError
from .models import (
    DerivedStatus,
    JoinStatus,
    Offer,
    OfferJoin,
    OfferJoinView,
    TERMINAL_STATUSES,
)
from .storage import InMemoryStorage


class OfferLedger:
    """Lifecycle of a user's subscription to a profit-bearing offer.

    Raw status only moves pending -> approved/rejected and
    pending/approved -> withdrawn. Whether an approved join is still earning
    is derived from its timestamps and the offer on every read.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def join(self, user_id: UUID, offer_id: UUID, now: Optional[datetime] = None) -> OfferJoin:
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            self.storage.get_user(user_id)
            offer = self.storage.get_offer(offer_id)
            if not offer.active:
                raise ValidationError(f"Offer {offer_id} is not active")
            if offer.deadline and now > offer.deadline:
                raise ValidationError(f"Offer {offer_id} closed at {offer.deadline.isoformat()}")

            held = [
                j for j in self.storage.find_offer_joins(user_id=user_id, offer_id=offer_id)
                if j.status != JoinStatus.WITHDRAWN
            ]
            if held:
                raise ValidationError(
                    f"User {user_id} already holds join {held[0].id} ({held[0].status.value}) for offer {offer_id}"
                )

            join = self.storage.insert_offer_join(OfferJoin(
                id=uuid4(),
                user_id=user_id,
                offer_id=offer_id,
                status=JoinStatus.PENDING,
                joined_at=now,
            ))

        logger.info(f"User {user_id} requested to join offer {offer_id} (join {join.id})")
        return join

    def approve(self, join_id: UUID, now: Optional[datetime] = None) -> OfferJoin:
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            join = self.storage.get_offer_join(join_id)
            if not join.can_approve():
                raise InvalidStateError(f"Cannot approve offer join in {join.status.value} state")
            join = self.storage.update_offer_join(
                join_id,
                status=JoinStatus.APPROVED,
                approved_at=now,
                last_profit_at=now,
            )

        logger.info(f"Offer join {join_id} approved; accrual clock starts at {now.isoformat()}")
        return join

    def reject(self, join_id: UUID) -> OfferJoin:
        with self.storage.atomic():
            join = self.storage.get_offer_join(join_id)
            if not join.can_reject():
                raise InvalidStateError(f"Cannot reject offer join in {join.status.value} state")
            join = self.storage.update_offer_join(join_id, status=JoinStatus.REJECTED)

        logger.info(f"Offer join {join_id} rejected")
        return join

    def withdraw(self, join_id: UUID) -> OfferJoin:
        with self.storage.atomic():
            join = self.storage.get_offer_join(join_id)
            if not join.can_withdraw():
                raise InvalidStateError(f"Cannot withdraw offer join in {join.status.value} state")
            join = self.storage.update_offer_join(join_id, status=JoinStatus.WITHDRAWN)

        logger.info(f"Offer join {join_id} withdrawn by user {join.user_id}")
        return join

    def expires_at(self, join: OfferJoin) -> Optional[datetime]:
        if join.approved_at is None:
            return None
        return join.approved_at + self.settings.maturity

    def is_expired(self, join: OfferJoin, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at(join)
        return expires_at is not None and now >= expires_at

    def derived_status(
        self, join: OfferJoin, offer: Offer, now: Optional[datetime] = None
    ) -> DerivedStatus:
        if join.status == JoinStatus.PENDING:
            return DerivedStatus.PENDING
        if join.status in TERMINAL_STATUSES:
            return DerivedStatus.INACTIVE
        if self.is_expired(join, now) or not offer.active:
            return DerivedStatus.INACTIVE
        return DerivedStatus.ACTIVE

    def get_join(self, join_id: UUID) -> OfferJoin:
        return self.storage.get_offer_join(join_id)

    def view(self, join_id: UUID, now: Optional[datetime] = None) -> OfferJoinView:
        return self._view(self.storage.get_offer_join(join_id), now)

    def list_user_joins(self, user_id: UUID, now: Optional[datetime] = None) -> list[OfferJoinView]:
        self.storage.get_user(user_id)
        joins = self.storage.find_offer_joins(user_id=user_id)
        joins.sort(key=lambda j: j.joined_at, reverse=True)
        return [self._view(join, now) for join in joins]

    def list_joins(self, status: Optional[JoinStatus] = None) -> list[OfferJoin]:
        return self.storage.find_offer_joins(status=status)

    def expired_joins(self, now: Optional[datetime] = None) -> list[UUID]:
        """Ids of approved joins that have passed maturity."""
        now = now or datetime.now(timezone.utc)
        return [
            join.id for join in self.storage.find_offer_joins(status=JoinStatus.APPROVED)
            if self.is_expired(join, now)
        ]

    def _view(self, join: OfferJoin, now: Optional[datetime]) -> OfferJoinView:
        now = now or datetime.now(timezone.utc)
        offer = self.storage.get_offer(join.offer_id)
        total = sum(
            (r.amount for r in self.storage.list_daily_profits(join.id)), Decimal("0.00")
        )
        return OfferJoinView(
            join=join,
            offer=offer,
            derived_status=self.derived_status(join, offer, now),
            is_expired=self.is_expired(join, now),
            expires_at=self.expires_at(join),
            total_profit=total,
        )
