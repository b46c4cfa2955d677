"""
Referral commissions.

Signup commissions are paid once per registered user, up to the configured
depth of the referrer chain. Team earnings are paid on every profit credit a
referred user receives and are repeatable.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from .errors import ReferrerNotFoundError, ValidationError
from .models import (
    BalanceType,
    CENT,
    GamificationMultipliers,
    ReferralEdge,
    ReferralNetwork,
    ReferralResult,
    ReferralSettings,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from .storage import InMemoryStorage


class ReferralPropagator:
    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def process_referral(
        self, new_user_id: UUID, referral_code: str, now: Optional[datetime] = None
    ) -> ReferralResult:
        """
        Credit the referrer chain of a newly registered user.

        The whole walk, every edge insert and the ``referred_by`` assignment
        run in one storage transaction. A second call for the same user
        returns the edges written by the first one.

        Raises:
            ReferrerNotFoundError: the code does not belong to any user
            ValidationError: empty code, self referral or a cyclic chain
        """
        now = now or datetime.now(timezone.utc)
        referral_code = (referral_code or "").strip()
        if not referral_code:
            raise ValidationError("Referral code is required")

        with self.storage.atomic():
            new_user = self.storage.get_user(new_user_id)
            existing = self.storage.list_referral_edges(referred_id=new_user_id)
            if new_user.referred_by is not None or existing:
                logger.info(f"Referral for user {new_user_id} already processed; skipping")
                return ReferralResult(
                    new_user_id=new_user_id,
                    referral_code=new_user.referred_by or referral_code,
                    edges=existing,
                    already_processed=True,
                )

            if new_user.referral_code == referral_code:
                raise ValidationError("Users cannot refer themselves")

            settings = self.storage.get_referral_settings()
            multipliers = self.storage.get_gamification_multipliers()
            chain = self._resolve_chain(new_user, referral_code, settings.max_depth)

            edges = []
            for level, referrer in enumerate(chain, start=1):
                points = self._points_for(level, settings, multipliers)
                self.storage.add_referral_stats(referrer.id, points)
                self.storage.append(Transaction(
                    id=uuid4(),
                    user_id=referrer.id,
                    type=TransactionType.REFERRAL_POINTS,
                    amount=Decimal(points),
                    status=TransactionStatus.COMPLETED,
                    source_user_id=new_user_id,
                    level=level,
                    description=f"Referral points for level {level} signup",
                    created_at=now,
                ))
                edges.append(self.storage.insert_referral_edge(ReferralEdge(
                    id=uuid4(),
                    referrer_id=referrer.id,
                    referred_id=new_user_id,
                    level=level,
                    points_earned=points,
                    referral_code=referral_code,
                    created_at=now,
                )))
                self._update_progress(referrer.id)

            self.storage.set_referred_by(new_user_id, referral_code)

        logger.info(
            f"Referral processed for user {new_user_id} with code {referral_code}: "
            f"{len(edges)} level(s) credited"
        )
        return ReferralResult(new_user_id=new_user_id, referral_code=referral_code, edges=edges)

    def distribute_team_earnings(
        self,
        source_user_id: UUID,
        profit: Decimal,
        now: Optional[datetime] = None,
        offer_join_id: Optional[UUID] = None,
        certificate_join_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        """Pay each upline referrer its share of a profit credit."""
        now = now or datetime.now(timezone.utc)
        settings = self.storage.get_referral_settings()
        credits = []

        with self.storage.atomic():
            source = self.storage.get_user(source_user_id)
            for level, referrer in enumerate(self._upline(source, settings.max_depth), start=1):
                earning = (profit * settings.rate_for_level(level)).quantize(CENT, ROUND_HALF_UP)
                if earning <= 0:
                    continue
                self.storage.update_balances(referrer.id, {BalanceType.TEAM_EARNINGS: earning})
                credits.append(self.storage.append(Transaction(
                    id=uuid4(),
                    user_id=referrer.id,
                    type=TransactionType.TEAM_EARNINGS,
                    amount=earning,
                    status=TransactionStatus.COMPLETED,
                    source_user_id=source_user_id,
                    offer_join_id=offer_join_id,
                    certificate_join_id=certificate_join_id,
                    level=level,
                    description=f"Team earnings from referral level {level}",
                    created_at=now,
                )))

        if credits:
            logger.debug(f"Team earnings from user {source_user_id}: {[str(c.amount) for c in credits]}")
        return credits

    def list_edges(
        self, referrer_id: Optional[UUID] = None, referred_id: Optional[UUID] = None
    ) -> list[ReferralEdge]:
        return self.storage.list_referral_edges(referrer_id=referrer_id, referred_id=referred_id)

    def network(self, user_id: UUID) -> ReferralNetwork:
        self.storage.get_user(user_id)
        levels: dict[int, list[ReferralEdge]] = {}
        edges = self.storage.list_referral_edges(referrer_id=user_id)
        for edge in edges:
            levels.setdefault(edge.level, []).append(edge)
        return ReferralNetwork(user_id=user_id, levels=levels, total_referrals=len(edges))

    def _resolve_chain(self, new_user: User, referral_code: str, max_depth: int) -> list[User]:
        referrer = self.storage.get_user_by_code(referral_code)
        if referrer is None:
            raise ReferrerNotFoundError(f"No user owns referral code {referral_code}")

        chain = []
        visited = {new_user.id}
        while referrer is not None and len(chain) < max_depth:
            if referrer.id in visited:
                raise ValidationError(
                    f"Referral chain for code {referral_code} loops back to user {referrer.id}"
                )
            visited.add(referrer.id)
            chain.append(referrer)
            if not referrer.referred_by:
                break
            referrer = self.storage.get_user_by_code(referrer.referred_by)
        return chain

    def _upline(self, user: User, max_depth: int) -> list[User]:
        upline = []
        visited = {user.id}
        code = user.referred_by
        while code and len(upline) < max_depth:
            referrer = self.storage.get_user_by_code(code)
            if referrer is None:
                break
            if referrer.id in visited:
                # Profit is still credited; only the corrupted part of the chain is skipped.
                logger.warning(f"Referral cycle above user {user.id} at user {referrer.id}")
                break
            visited.add(referrer.id)
            upline.append(referrer)
            code = referrer.referred_by
        return upline

    def _points_for(
        self, level: int, settings: ReferralSettings, multipliers: GamificationMultipliers
    ) -> int:
        points = Decimal(settings.points_for_level(level)) * multipliers.points_multiplier_referral
        return int(points.to_integral_value(rounding=ROUND_HALF_UP))

    def _update_progress(self, user_id: UUID) -> None:
        user = self.storage.get_user(user_id)
        badges = list(user.badges)
        for badge in self.storage.list_badges():
            if user.referral_count >= badge.requirement and badge.id not in badges:
                badges.append(badge.id)
                logger.info(f"User {user_id} earned badge '{badge.name}'")

        level = user.level
        for threshold in self.storage.list_level_thresholds():
            if threshold.requirement <= user.total_referral_points:
                level = max(level, threshold.level)

        if level != user.level or badges != user.badges:
            self.storage.set_progress(user_id, level, badges)
