"""
Reward Ledger for Investment Offers and Referrals

This package provides:
- Offer joins with a derived active/inactive status and 30-day maturity
- Daily profit accrual claimed per 24h window with compare-and-swap
- Investment certificates funded from a chosen balance
- Three-level referral signup points and team earnings
- A scheduled accrual sweep and a FastAPI surface
"""

from .accrual import ProfitAccrualEngine
from .certificates import CertificateLedger
from .config import LedgerSettings, get_settings
from .errors import (
    ConcurrencyConflict,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerServiceError,
    NotFoundError,
    ReferrerNotFoundError,
    StorageError,
    ValidationError,
)
from .models import (
    BalanceType,
    CreditOutcome,
    DerivedStatus,
    JoinStatus,
    TransactionType,
)
from .offers import OfferLedger
from .referrals import ReferralPropagator
from .service import RewardLedgerService
from .storage import InMemoryStorage

__all__ = [
    "BalanceType",
    "CertificateLedger",
    "ConcurrencyConflict",
    "CreditOutcome",
    "DerivedStatus",
    "InMemoryStorage",
    "InsufficientBalanceError",
    "InvalidStateError",
    "JoinStatus",
    "LedgerServiceError",
    "LedgerSettings",
    "NotFoundError",
    "OfferLedger",
    "ProfitAccrualEngine",
    "ReferralPropagator",
    "ReferrerNotFoundError",
    "RewardLedgerService",
    "StorageError",
    "TransactionType",
    "ValidationError",
    "get_settings",
]
