from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from loguru import logger

from .accrual import ProfitAccrualEngine
from .certificates import CertificateLedger
from .config import LedgerSettings, get_settings
from .models import AccrualRunResponse, TransactionHistoryResponse, User
from .offers import OfferLedger
from .referrals import ReferralPropagator
from .storage import InMemoryStorage


class RewardLedgerService:
    """Wires the ledger components around one shared store."""

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(
            referral_settings=self.settings.referral_settings()
        )
        self.offers = OfferLedger(self.storage, self.settings)
        self.referrals = ReferralPropagator(self.storage)
        self.accrual = ProfitAccrualEngine(self.offers, self.referrals, self.settings)
        self.certificates = CertificateLedger(self.storage, self.referrals)

    def run_accrual(self, now: Optional[datetime] = None) -> AccrualRunResponse:
        """Credit every offer join and certificate join that is due at ``now``."""
        now = now or datetime.now(timezone.utc)
        offers = self.accrual.accrue_all(now)
        certificates = self.certificates.accrue_all(now)
        logger.info(
            f"Accrual run at {now.isoformat()}: "
            f"{offers.credited + certificates.credited} credit(s) written"
        )
        return AccrualRunResponse(offers=offers, certificates=certificates)

    def get_user(self, user_id: UUID) -> User:
        return self.storage.get_user(user_id)

    def get_transaction_history(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> TransactionHistoryResponse:
        self.storage.get_user(user_id)
        transactions = self.storage.list_transactions(user_id=user_id)
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        paginated = transactions[offset:offset + limit]

        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=paginated,
            total_count=len(transactions),
        )
