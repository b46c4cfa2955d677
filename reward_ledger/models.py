from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class JoinStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class DerivedStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class TransactionType(str, Enum):
    DAILY_PROFIT = "daily_profit"
    TEAM_EARNINGS = "team_earnings"
    CERTIFICATE_PROFIT = "certificate_profit"
    REFERRAL_POINTS = "referral_points"
    BALANCE_INVESTMENT = "balance_investment"
    BONUSES_INVESTMENT = "bonuses_investment"
    TEAM_EARNINGS_INVESTMENT = "team_earnings_investment"
    TOTAL_POINTS_INVESTMENT = "total_points_investment"
    INVESTMENT_REFUND = "investment_refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BalanceType(str, Enum):
    BALANCE = "balance"
    BONUSES = "bonuses"
    TEAM_EARNINGS = "team_earnings"
    TOTAL_POINTS = "total_points"

    @property
    def investment_type(self) -> TransactionType:
        return TransactionType(f"{self.value}_investment")


class CreditOutcome(str, Enum):
    CREDITED = "credited"
    NOT_DUE = "not_due"
    STOPPED = "stopped"
    NO_PROFIT = "no_profit"
    ALREADY_CREDITED = "already_credited"


class CountdownState(str, Enum):
    COUNTING = "counting"
    DUE = "due"
    STOPPED = "stopped"


TERMINAL_STATUSES = (JoinStatus.REJECTED, JoinStatus.WITHDRAWN)

CENT = Decimal("0.01")


class User(BaseModel):
    id: UUID
    referral_code: str
    referred_by: Optional[str] = None
    balance: Decimal = Decimal("0.00")
    bonuses: Decimal = Decimal("0.00")
    team_earnings: Decimal = Decimal("0.00")
    total_points: Decimal = Decimal("0.00")
    referral_count: int = 0
    total_referral_points: int = 0
    level: int = 0
    badges: list[UUID] = Field(default_factory=list)
    version: int = 0
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def balance_of(self, balance_type: BalanceType) -> Decimal:
        return getattr(self, balance_type.value)


class Offer(BaseModel):
    id: UUID
    title: str = ""
    daily_profit: Decimal
    monthly_profit: Decimal = Decimal("0.00")
    cost: Decimal = Decimal("0.00")
    active: bool = True
    deadline: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OfferJoin(BaseModel):
    id: UUID
    user_id: UUID
    offer_id: UUID
    status: JoinStatus
    joined_at: datetime
    approved_at: Optional[datetime] = None
    last_profit_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def profit_anchor(self) -> Optional[datetime]:
        return self.last_profit_at or self.approved_at

    def can_approve(self) -> bool:
        return self.status == JoinStatus.PENDING

    def can_reject(self) -> bool:
        return self.status == JoinStatus.PENDING

    def can_withdraw(self) -> bool:
        return self.status in (JoinStatus.PENDING, JoinStatus.APPROVED)


class DailyProfitRecord(BaseModel):
    id: UUID
    offer_join_id: UUID
    user_id: UUID
    offer_id: UUID
    amount: Decimal
    profit_date: datetime
    transaction_id: UUID

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID
    user_id: UUID
    type: TransactionType
    amount: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    source_user_id: Optional[UUID] = None
    offer_join_id: Optional[UUID] = None
    certificate_join_id: Optional[UUID] = None
    level: Optional[int] = None
    description: str = ""
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralEdge(BaseModel):
    id: UUID
    referrer_id: UUID
    referred_id: UUID
    level: int = Field(..., ge=1)
    points_earned: int
    referral_code: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvestmentCertificate(BaseModel):
    id: UUID
    title: str = ""
    invested_amount: Decimal
    profit_rate: Decimal
    profit_duration_months: int = Field(default=6, ge=1)
    active: bool = True
    join_limit: Optional[int] = None
    user_join_limit: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class InvestmentCertificateJoin(BaseModel):
    id: UUID
    user_id: UUID
    certificate_id: UUID
    balance_type: BalanceType
    invested_amount: Decimal
    status: JoinStatus
    joined_at: datetime
    approved_at: Optional[datetime] = None
    next_profit_date: Optional[datetime] = None
    last_profit_at: Optional[datetime] = None
    periods_paid: int = 0

    model_config = ConfigDict(from_attributes=True)

    def can_approve(self) -> bool:
        return self.status == JoinStatus.PENDING

    def can_reject(self) -> bool:
        return self.status == JoinStatus.PENDING

    def can_withdraw(self) -> bool:
        return self.status in (JoinStatus.PENDING, JoinStatus.APPROVED)


class Badge(BaseModel):
    id: UUID
    name: str
    requirement: int
    active: bool = True


class LevelThreshold(BaseModel):
    level: int
    requirement: int


class ReferralSettings(BaseModel):
    level1_points: int = 100
    level2_points: int = 50
    level3_points: int = 25
    team_earnings_rates: list[Decimal] = Field(
        default_factory=lambda: [Decimal("0.03"), Decimal("0.02"), Decimal("0.01")]
    )
    max_depth: int = Field(default=3, ge=1)

    def points_for_level(self, level: int) -> int:
        points = {1: self.level1_points, 2: self.level2_points, 3: self.level3_points}
        return points.get(level, 0)

    def rate_for_level(self, level: int) -> Decimal:
        if 1 <= level <= len(self.team_earnings_rates):
            return self.team_earnings_rates[level - 1]
        return Decimal("0")


class GamificationMultipliers(BaseModel):
    points_multiplier_deposit: Decimal = Decimal("1")
    points_multiplier_referral: Decimal = Decimal("1")
    points_multiplier_withdrawal: Decimal = Decimal("1")


class CreditResult(BaseModel):
    join_id: UUID
    outcome: CreditOutcome
    amount: Decimal = Decimal("0.00")
    credited_at: Optional[datetime] = None
    profit_record: Optional[DailyProfitRecord] = None
    transaction: Optional[Transaction] = None
    team_earnings: list[Transaction] = Field(default_factory=list)

    @property
    def credited(self) -> bool:
        return self.outcome == CreditOutcome.CREDITED


class ProfitCountdown(BaseModel):
    join_id: UUID
    state: CountdownState
    next_profit_at: Optional[datetime] = None
    remaining_seconds: float = 0.0


class OfferJoinView(BaseModel):
    join: OfferJoin
    offer: Offer
    derived_status: DerivedStatus
    is_expired: bool
    expires_at: Optional[datetime] = None
    total_profit: Decimal = Decimal("0.00")


class ReferralResult(BaseModel):
    new_user_id: UUID
    referral_code: str
    edges: list[ReferralEdge]
    already_processed: bool = False


class ReferralNetwork(BaseModel):
    user_id: UUID
    levels: dict[int, list[ReferralEdge]]
    total_referrals: int


class AccrualSummary(BaseModel):
    run_at: datetime
    processed: int = 0
    credited: int = 0
    not_due: int = 0
    stopped: int = 0
    no_profit: int = 0
    already_credited: int = 0
    failed: int = 0
    total_amount: Decimal = Decimal("0.00")

    def record(self, result: CreditResult) -> None:
        self.processed += 1
        if result.outcome == CreditOutcome.CREDITED:
            self.credited += 1
            self.total_amount += result.amount
        elif result.outcome == CreditOutcome.ALREADY_CREDITED:
            self.already_credited += 1
        elif result.outcome == CreditOutcome.STOPPED:
            self.stopped += 1
        elif result.outcome == CreditOutcome.NO_PROFIT:
            self.no_profit += 1
        else:
            self.not_due += 1


class AccrualRunResponse(BaseModel):
    offers: AccrualSummary
    certificates: AccrualSummary


class JoinOfferRequest(BaseModel):
    user_id: UUID

    model_config = ConfigDict(json_schema_extra={
        "example": {"user_id": "550e8400-e29b-41d4-a716-446655440000"}
    })


class JoinCertificateRequest(BaseModel):
    user_id: UUID
    amount: Decimal
    balance_type: BalanceType = Field(..., description="Balance that funds the investment")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": 500.00,
            "balance_type": "bonuses"
        }
    })


class ProcessReferralRequest(BaseModel):
    new_user_id: UUID
    referral_code: str = Field(..., min_length=1, description="Code entered at registration")


class AdminActionRequest(BaseModel):
    performed_by: Optional[str] = None


class TransactionHistoryResponse(BaseModel):
    user_id: UUID
    transactions: list[Transaction]
    total_count: int
