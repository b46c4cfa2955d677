import threading
from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, Optional, Union
from uuid import UUID, uuid4

from loguru import logger

from .errors import (
    ConcurrencyConflict,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerServiceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .models import (
    Badge,
    BalanceType,
    DailyProfitRecord,
    GamificationMultipliers,
    InvestmentCertificate,
    InvestmentCertificateJoin,
    JoinStatus,
    LevelThreshold,
    Offer,
    OfferJoin,
    ReferralEdge,
    ReferralSettings,
    Transaction,
    TransactionType,
    User,
)


_MISSING = object()


class InMemoryStorage:
    """Account store, transaction log and settings provider in one process.

    Every write goes through ``atomic()``: the store lock is held for the
    whole block and every row it wrote is restored from an undo log if the
    block raises, so a multi-row write either lands completely or not at all.
    """

    def __init__(
        self,
        referral_settings: Optional[ReferralSettings] = None,
        multipliers: Optional[GamificationMultipliers] = None,
        seed: bool = False,
    ):
        self.users: dict[UUID, dict] = {}
        self.offers: dict[UUID, dict] = {}
        self.offer_joins: dict[UUID, dict] = {}
        self.daily_profits: dict[UUID, dict] = {}
        self.transactions: list[dict] = []
        self.referral_edges: dict[UUID, dict] = {}
        self.edge_index: dict[tuple[UUID, int], UUID] = {}
        self.certificates: dict[UUID, dict] = {}
        self.certificate_joins: dict[UUID, dict] = {}
        self.badges: dict[UUID, dict] = {}
        self.level_thresholds: list[dict] = []
        self.referral_settings = referral_settings or ReferralSettings()
        self.gamification_multipliers = multipliers or GamificationMultipliers()
        self._lock = threading.RLock()
        self._undo: Optional[list[tuple[str, Any, Any]]] = None
        self._touched: Optional[set[tuple[str, Any]]] = None
        if seed:
            self._seed_data()

    def _seed_data(self):
        root = self.add_user(
            "ROOT0001", user_id=UUID("550e8400-e29b-41d4-a716-446655440000"),
            bonuses=Decimal("300.00"),
        )
        self.add_user(
            "MEMBER01", user_id=UUID("660e8400-e29b-41d4-a716-446655440001"),
            referred_by=root.referral_code, balance=Decimal("1000.00"),
        )
        self.add_offer(
            offer_id=UUID("11111111-1111-1111-1111-111111111111"),
            title="Starter Offer", daily_profit=Decimal("10.00"),
            monthly_profit=Decimal("300.00"), cost=Decimal("500.00"),
        )
        self.add_certificate(
            certificate_id=UUID("22222222-2222-2222-2222-222222222222"),
            title="Six Month Certificate", invested_amount=Decimal("100.00"),
            profit_rate=Decimal("5"), profit_duration_months=6,
        )
        self.add_badge("First Referral", 1)
        self.add_badge("Team Builder", 10)
        for level, requirement in ((1, 100), (2, 500), (3, 1000)):
            self.add_level_threshold(level, requirement)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._undo is not None:
                yield self
                return

            self._undo = []
            self._touched = set()
            try:
                yield self
            except LedgerServiceError:
                self._rollback()
                raise
            except Exception as e:
                self._rollback()
                logger.exception("Storage transaction rolled back")
                raise StorageError(f"Storage transaction failed: {e}") from e
            finally:
                self._undo = None
                self._touched = None

    def _track(self, table: str, key: Any = None) -> None:
        """Record a row's pre-image the first time the open transaction writes it.

        List tables are append-only, so only their length is recorded.
        """
        if (table, key) in self._touched:
            return
        self._touched.add((table, key))
        rows = getattr(self, table)
        if isinstance(rows, list):
            self._undo.append((table, key, len(rows)))
        else:
            before = rows.get(key, _MISSING)
            self._undo.append((table, key, before if before is _MISSING else deepcopy(before)))

    def _rollback(self) -> None:
        for table, key, before in reversed(self._undo):
            rows = getattr(self, table)
            if isinstance(rows, list):
                del rows[before:]
            elif before is _MISSING:
                rows.pop(key, None)
            else:
                rows[key] = before

    def compare_and_set(
        self, table: str, row_id: UUID, field: str, expected: Any, new: Any
    ) -> dict:
        with self.atomic():
            rows = getattr(self, table)
            row = rows.get(row_id)
            if row is None:
                raise NotFoundError(f"{table} row {row_id} not found")
            if row[field] != expected:
                raise ConcurrencyConflict(
                    f"{table}.{field} for {row_id} changed concurrently"
                )
            self._track(table, row_id)
            row[field] = new
            return row

    # ------------------------------------------------------------------
    # Account store
    # ------------------------------------------------------------------

    def add_user(
        self,
        referral_code: str,
        user_id: Optional[UUID] = None,
        referred_by: Optional[str] = None,
        **balances: Decimal,
    ) -> User:
        with self.atomic():
            if self._find_user_by_code(referral_code):
                raise ValidationError(f"Referral code {referral_code} is already taken")
            user = User(
                id=user_id or uuid4(),
                referral_code=referral_code,
                referred_by=referred_by,
                created_at=datetime.now(timezone.utc),
                **balances,
            )
            self._track("users", user.id)
            self.users[user.id] = user.model_dump()
            return user

    def get_user(self, user_id: UUID) -> User:
        data = self.users.get(user_id)
        if not data:
            raise NotFoundError(f"User {user_id} not found")
        return User(**data)

    def get_user_by_code(self, referral_code: str) -> Optional[User]:
        data = self._find_user_by_code(referral_code)
        return User(**data) if data else None

    def _find_user_by_code(self, referral_code: str) -> Optional[dict]:
        for data in self.users.values():
            if data["referral_code"] == referral_code:
                return data
        return None

    def update_balances(
        self,
        user_id: UUID,
        deltas: dict[Union[BalanceType, str], Decimal],
        expected_version: Optional[int] = None,
    ) -> User:
        with self.atomic():
            data = self._user_row(user_id, expected_version)
            self._track("users", user_id)
            updated = {}
            for key, delta in deltas.items():
                field = BalanceType(key).value
                new_value = data[field] + delta
                if new_value < 0:
                    raise InsufficientBalanceError(
                        f"Insufficient {field} for user {user_id}: "
                        f"available {data[field]}, requested {-delta}"
                    )
                updated[field] = new_value
            data.update(updated)
            data["version"] += 1
            return User(**data)

    def add_referral_stats(self, user_id: UUID, points: int) -> User:
        with self.atomic():
            data = self._user_row(user_id)
            self._track("users", user_id)
            data["referral_count"] += 1
            data["total_referral_points"] += points
            data["version"] += 1
            return User(**data)

    def set_referred_by(self, user_id: UUID, referral_code: str) -> User:
        with self.atomic():
            data = self._user_row(user_id)
            self._track("users", user_id)
            if data["referred_by"] is not None:
                raise InvalidStateError(
                    f"User {user_id} is already referred by {data['referred_by']}"
                )
            data["referred_by"] = referral_code
            data["version"] += 1
            return User(**data)

    def set_progress(self, user_id: UUID, level: int, badges: list[UUID]) -> User:
        with self.atomic():
            data = self._user_row(user_id)
            self._track("users", user_id)
            data["level"] = level
            data["badges"] = list(badges)
            data["version"] += 1
            return User(**data)

    def _user_row(self, user_id: UUID, expected_version: Optional[int] = None) -> dict:
        data = self.users.get(user_id)
        if not data:
            raise NotFoundError(f"User {user_id} not found")
        if expected_version is not None and data["version"] != expected_version:
            raise ConcurrencyConflict(
                f"User {user_id} is at version {data['version']}, expected {expected_version}"
            )
        return data

    # ------------------------------------------------------------------
    # Transaction log
    # ------------------------------------------------------------------

    def append(self, transaction: Transaction) -> Transaction:
        with self.atomic():
            self._track("transactions")
            self.transactions.append(transaction.model_dump())
            return transaction

    def list_transactions(
        self,
        user_id: Optional[UUID] = None,
        type: Optional[TransactionType] = None,
        offer_join_id: Optional[UUID] = None,
        certificate_join_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        rows = self.transactions
        if user_id is not None:
            rows = [t for t in rows if t["user_id"] == user_id]
        if type is not None:
            rows = [t for t in rows if t["type"] == type]
        if offer_join_id is not None:
            rows = [t for t in rows if t["offer_join_id"] == offer_join_id]
        if certificate_join_id is not None:
            rows = [t for t in rows if t["certificate_join_id"] == certificate_join_id]
        return [Transaction(**t) for t in rows]

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    def add_offer(self, offer_id: Optional[UUID] = None, **fields) -> Offer:
        offer = Offer(id=offer_id or uuid4(), **fields)
        with self.atomic():
            self._track("offers", offer.id)
            self.offers[offer.id] = offer.model_dump()
        return offer

    def get_offer(self, offer_id: UUID) -> Offer:
        data = self.offers.get(offer_id)
        if not data:
            raise NotFoundError(f"Offer {offer_id} not found")
        return Offer(**data)

    def set_offer_active(self, offer_id: UUID, active: bool) -> Offer:
        with self.atomic():
            data = self.offers.get(offer_id)
            if not data:
                raise NotFoundError(f"Offer {offer_id} not found")
            self._track("offers", offer_id)
            data["active"] = active
            return Offer(**data)

    def insert_offer_join(self, join: OfferJoin) -> OfferJoin:
        with self.atomic():
            self._track("offer_joins", join.id)
            self.offer_joins[join.id] = join.model_dump()
        return join

    def get_offer_join(self, join_id: UUID) -> OfferJoin:
        data = self.offer_joins.get(join_id)
        if not data:
            raise NotFoundError(f"Offer join {join_id} not found")
        return OfferJoin(**data)

    def update_offer_join(self, join_id: UUID, **changes) -> OfferJoin:
        with self.atomic():
            data = self.offer_joins.get(join_id)
            if not data:
                raise NotFoundError(f"Offer join {join_id} not found")
            self._track("offer_joins", join_id)
            data.update(changes)
            return OfferJoin(**data)

    def find_offer_joins(
        self,
        user_id: Optional[UUID] = None,
        offer_id: Optional[UUID] = None,
        status: Optional[JoinStatus] = None,
    ) -> list[OfferJoin]:
        rows = list(self.offer_joins.values())
        if user_id is not None:
            rows = [j for j in rows if j["user_id"] == user_id]
        if offer_id is not None:
            rows = [j for j in rows if j["offer_id"] == offer_id]
        if status is not None:
            rows = [j for j in rows if j["status"] == status]
        return [OfferJoin(**j) for j in rows]

    def insert_daily_profit(self, record: DailyProfitRecord) -> DailyProfitRecord:
        with self.atomic():
            self._track("daily_profits", record.id)
            self.daily_profits[record.id] = record.model_dump()
        return record

    def list_daily_profits(self, offer_join_id: UUID) -> list[DailyProfitRecord]:
        records = [
            DailyProfitRecord(**r) for r in self.daily_profits.values()
            if r["offer_join_id"] == offer_join_id
        ]
        records.sort(key=lambda r: r.profit_date)
        return records

    # ------------------------------------------------------------------
    # Referral edges
    # ------------------------------------------------------------------

    def insert_referral_edge(self, edge: ReferralEdge) -> ReferralEdge:
        key = (edge.referred_id, edge.level)
        with self.atomic():
            if key in self.edge_index:
                raise ConcurrencyConflict(
                    f"Referral edge for user {edge.referred_id} at level {edge.level} already exists"
                )
            self._track("referral_edges", edge.id)
            self._track("edge_index", key)
            self.referral_edges[edge.id] = edge.model_dump()
            self.edge_index[key] = edge.id
        return edge

    def list_referral_edges(
        self,
        referrer_id: Optional[UUID] = None,
        referred_id: Optional[UUID] = None,
    ) -> list[ReferralEdge]:
        rows = list(self.referral_edges.values())
        if referrer_id is not None:
            rows = [e for e in rows if e["referrer_id"] == referrer_id]
        if referred_id is not None:
            rows = [e for e in rows if e["referred_id"] == referred_id]
        edges = [ReferralEdge(**e) for e in rows]
        edges.sort(key=lambda e: (e.level, e.created_at))
        return edges

    # ------------------------------------------------------------------
    # Investment certificates
    # ------------------------------------------------------------------

    def add_certificate(self, certificate_id: Optional[UUID] = None, **fields) -> InvestmentCertificate:
        certificate = InvestmentCertificate(id=certificate_id or uuid4(), **fields)
        with self.atomic():
            self._track("certificates", certificate.id)
            self.certificates[certificate.id] = certificate.model_dump()
        return certificate

    def get_certificate(self, certificate_id: UUID) -> InvestmentCertificate:
        data = self.certificates.get(certificate_id)
        if not data:
            raise NotFoundError(f"Certificate {certificate_id} not found")
        return InvestmentCertificate(**data)

    def insert_certificate_join(self, join: InvestmentCertificateJoin) -> InvestmentCertificateJoin:
        with self.atomic():
            self._track("certificate_joins", join.id)
            self.certificate_joins[join.id] = join.model_dump()
        return join

    def get_certificate_join(self, join_id: UUID) -> InvestmentCertificateJoin:
        data = self.certificate_joins.get(join_id)
        if not data:
            raise NotFoundError(f"Certificate join {join_id} not found")
        return InvestmentCertificateJoin(**data)

    def update_certificate_join(self, join_id: UUID, **changes) -> InvestmentCertificateJoin:
        with self.atomic():
            data = self.certificate_joins.get(join_id)
            if not data:
                raise NotFoundError(f"Certificate join {join_id} not found")
            self._track("certificate_joins", join_id)
            data.update(changes)
            return InvestmentCertificateJoin(**data)

    def find_certificate_joins(
        self,
        user_id: Optional[UUID] = None,
        certificate_id: Optional[UUID] = None,
        status: Optional[JoinStatus] = None,
    ) -> list[InvestmentCertificateJoin]:
        rows = list(self.certificate_joins.values())
        if user_id is not None:
            rows = [j for j in rows if j["user_id"] == user_id]
        if certificate_id is not None:
            rows = [j for j in rows if j["certificate_id"] == certificate_id]
        if status is not None:
            rows = [j for j in rows if j["status"] == status]
        return [InvestmentCertificateJoin(**j) for j in rows]

    # ------------------------------------------------------------------
    # Gamification and settings provider
    # ------------------------------------------------------------------

    def add_badge(self, name: str, requirement: int, active: bool = True) -> Badge:
        badge = Badge(id=uuid4(), name=name, requirement=requirement, active=active)
        with self.atomic():
            self._track("badges", badge.id)
            self.badges[badge.id] = badge.model_dump()
        return badge

    def list_badges(self, active_only: bool = True) -> list[Badge]:
        badges = [Badge(**b) for b in self.badges.values()]
        if active_only:
            badges = [b for b in badges if b.active]
        return badges

    def add_level_threshold(self, level: int, requirement: int) -> LevelThreshold:
        threshold = LevelThreshold(level=level, requirement=requirement)
        with self.atomic():
            self._track("level_thresholds")
            self.level_thresholds.append(threshold.model_dump())
        return threshold

    def list_level_thresholds(self) -> list[LevelThreshold]:
        return sorted(
            (LevelThreshold(**t) for t in self.level_thresholds),
            key=lambda t: t.requirement,
        )

    def get_referral_settings(self) -> ReferralSettings:
        return self.referral_settings.model_copy(deep=True)

    def get_gamification_multipliers(self) -> GamificationMultipliers:
        return self.gamification_multipliers.model_copy()
