from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from .config import LedgerSettings, get_settings
from .errors import ConcurrencyConflict, LedgerServiceError
from .models import (
    AccrualSummary,
    BalanceType,
    CountdownState,
    CreditOutcome,
    CreditResult,
    DailyProfitRecord,
    DerivedStatus,
    JoinStatus,
    ProfitCountdown,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .offers import OfferLedger
from .referrals import ReferralPropagator


class ProfitAccrualEngine:
    """Credits daily offer profit, one credit per accrual window.

    The window is claimed by compare-and-swapping ``last_profit_at`` from the
    value read before the write. Redundant or concurrent callers lose the swap
    and report ``already_credited`` instead of writing a second record.
    """

    def __init__(
        self,
        offers: OfferLedger,
        referrals: Optional[ReferralPropagator] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self.offers = offers
        self.storage = offers.storage
        self.referrals = referrals or ReferralPropagator(self.storage)
        self.settings = settings or get_settings()

    @property
    def window(self):
        return self.settings.accrual_window

    def credit_due_profit(self, join_id: UUID, now: Optional[datetime] = None) -> CreditResult:
        now = now or datetime.now(timezone.utc)
        join = self.storage.get_offer_join(join_id)
        offer = self.storage.get_offer(join.offer_id)

        if self.offers.derived_status(join, offer, now) != DerivedStatus.ACTIVE:
            logger.debug(f"Offer join {join_id} is not active; no profit accrues")
            return CreditResult(join_id=join_id, outcome=CreditOutcome.STOPPED)

        anchor = join.profit_anchor
        if anchor is None or now - anchor < self.window:
            return CreditResult(join_id=join_id, outcome=CreditOutcome.NOT_DUE)

        amount = offer.daily_profit
        if amount <= 0:
            return CreditResult(join_id=join_id, outcome=CreditOutcome.NO_PROFIT)

        try:
            with self.storage.atomic():
                current = self.storage.get_offer_join(join_id)
                current_offer = self.storage.get_offer(join.offer_id)
                if self.offers.derived_status(current, current_offer, now) != DerivedStatus.ACTIVE:
                    logger.debug(f"Offer join {join_id} stopped before its credit was written")
                    return CreditResult(join_id=join_id, outcome=CreditOutcome.STOPPED)

                self.storage.compare_and_set(
                    "offer_joins", join_id, "last_profit_at", join.last_profit_at, now
                )
                self.storage.update_balances(join.user_id, {BalanceType.BALANCE: amount})
                transaction = self.storage.append(Transaction(
                    id=uuid4(),
                    user_id=join.user_id,
                    type=TransactionType.DAILY_PROFIT,
                    amount=amount,
                    status=TransactionStatus.COMPLETED,
                    offer_join_id=join_id,
                    description=f"Daily profit from offer {offer.title or offer.id}",
                    created_at=now,
                ))
                record = self.storage.insert_daily_profit(DailyProfitRecord(
                    id=uuid4(),
                    offer_join_id=join_id,
                    user_id=join.user_id,
                    offer_id=offer.id,
                    amount=amount,
                    profit_date=now,
                    transaction_id=transaction.id,
                ))
                team = self.referrals.distribute_team_earnings(
                    join.user_id, amount, now, offer_join_id=join_id
                )
        except ConcurrencyConflict:
            logger.warning(f"Profit window for offer join {join_id} was claimed by another caller")
            return CreditResult(join_id=join_id, outcome=CreditOutcome.ALREADY_CREDITED)

        logger.info(f"Credited {amount} daily profit to user {join.user_id} for offer join {join_id}")
        return CreditResult(
            join_id=join_id,
            outcome=CreditOutcome.CREDITED,
            amount=amount,
            credited_at=now,
            profit_record=record,
            transaction=transaction,
            team_earnings=team,
        )

    def time_to_next_profit(self, join_id: UUID, now: Optional[datetime] = None) -> ProfitCountdown:
        now = now or datetime.now(timezone.utc)
        join = self.storage.get_offer_join(join_id)
        offer = self.storage.get_offer(join.offer_id)

        status = self.offers.derived_status(join, offer, now)
        if status != DerivedStatus.ACTIVE or join.profit_anchor is None:
            return ProfitCountdown(join_id=join_id, state=CountdownState.STOPPED)

        next_profit_at = join.profit_anchor + self.window
        remaining = (next_profit_at - now).total_seconds()
        if remaining <= 0:
            return ProfitCountdown(
                join_id=join_id, state=CountdownState.DUE, next_profit_at=next_profit_at
            )
        return ProfitCountdown(
            join_id=join_id,
            state=CountdownState.COUNTING,
            next_profit_at=next_profit_at,
            remaining_seconds=remaining,
        )

    def total_profit(self, join_id: UUID) -> Decimal:
        self.storage.get_offer_join(join_id)
        return sum(
            (r.amount for r in self.storage.list_daily_profits(join_id)), Decimal("0.00")
        )

    def accrue_all(self, now: Optional[datetime] = None) -> AccrualSummary:
        now = now or datetime.now(timezone.utc)
        summary = AccrualSummary(run_at=now)

        for join in self.storage.find_offer_joins(status=JoinStatus.APPROVED):
            try:
                summary.record(self.credit_due_profit(join.id, now))
            except LedgerServiceError:
                summary.processed += 1
                summary.failed += 1
                logger.exception(f"Daily profit accrual failed for offer join {join.id}")

        logger.info(
            f"Offer accrual run: {summary.credited} credited, {summary.not_due} not due, "
            f"{summary.stopped} stopped, {summary.failed} failed"
        )
        return summary
