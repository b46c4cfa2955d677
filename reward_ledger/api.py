from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .config import get_settings
from .errors import (
    ConcurrencyConflict,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerServiceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .logging_config import setup_logging
from .models import (
    AccrualRunResponse,
    AdminActionRequest,
    CreditResult,
    InvestmentCertificateJoin,
    JoinCertificateRequest,
    JoinOfferRequest,
    OfferJoin,
    OfferJoinView,
    ProcessReferralRequest,
    ProfitCountdown,
    ReferralNetwork,
    ReferralResult,
    TransactionHistoryResponse,
    User,
)
from .scheduler import AccrualScheduler
from .service import RewardLedgerService
from .storage import InMemoryStorage

ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    InsufficientBalanceError: status.HTTP_400_BAD_REQUEST,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    StorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(error: LedgerServiceError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_400_BAD_REQUEST


def _audit(action: str, join_id: UUID, request: Optional[AdminActionRequest]) -> None:
    if request and request.performed_by:
        logger.info(f"{action} on {join_id} performed by {request.performed_by}")


def create_app(service: Optional[RewardLedgerService] = None) -> FastAPI:
    settings = get_settings()
    if service is None:
        service = RewardLedgerService(
            InMemoryStorage(referral_settings=settings.referral_settings(), seed=True),
            settings,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_json)
        scheduler = AccrualScheduler(service)
        if settings.scheduler_enabled:
            scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown(wait=False)

    app = FastAPI(
        title="Reward Ledger API",
        description="Offer subscriptions, daily profit accrual, investment certificates and multi-level referral commissions",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError):
        code = status_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "reward-ledger"}

    # Offers

    @app.post(
        "/offers/{offer_id}/joins",
        response_model=OfferJoin,
        status_code=status.HTTP_201_CREATED,
        tags=["Offers"],
    )
    def join_offer(offer_id: UUID, request: JoinOfferRequest) -> OfferJoin:
        return service.offers.join(request.user_id, offer_id)

    @app.post("/offer-joins/{join_id}/approve", response_model=OfferJoin, tags=["Offers"])
    def approve_offer_join(join_id: UUID, request: Optional[AdminActionRequest] = None) -> OfferJoin:
        join = service.offers.approve(join_id)
        _audit("approve", join_id, request)
        return join

    @app.post("/offer-joins/{join_id}/reject", response_model=OfferJoin, tags=["Offers"])
    def reject_offer_join(join_id: UUID, request: Optional[AdminActionRequest] = None) -> OfferJoin:
        join = service.offers.reject(join_id)
        _audit("reject", join_id, request)
        return join

    @app.post("/offer-joins/{join_id}/withdraw", response_model=OfferJoin, tags=["Offers"])
    def withdraw_offer_join(join_id: UUID) -> OfferJoin:
        return service.offers.withdraw(join_id)

    @app.get("/offer-joins/{join_id}/status", response_model=OfferJoinView, tags=["Offers"])
    def get_offer_join_status(join_id: UUID) -> OfferJoinView:
        return service.offers.view(join_id)

    @app.get("/offer-joins/{join_id}/countdown", response_model=ProfitCountdown, tags=["Offers"])
    def get_offer_join_countdown(join_id: UUID) -> ProfitCountdown:
        return service.accrual.time_to_next_profit(join_id)

    @app.post("/offer-joins/{join_id}/credit", response_model=CreditResult, tags=["Offers"])
    def credit_offer_join(join_id: UUID) -> CreditResult:
        return service.accrual.credit_due_profit(join_id)

    @app.get("/offer-joins/{join_id}/profit", tags=["Offers"])
    def get_offer_join_profit(join_id: UUID):
        return {"join_id": join_id, "total_profit": service.accrual.total_profit(join_id)}

    # Referrals

    @app.post("/referrals", response_model=ReferralResult, tags=["Referrals"])
    def process_referral(request: ProcessReferralRequest) -> ReferralResult:
        return service.referrals.process_referral(request.new_user_id, request.referral_code)

    # Certificates

    @app.post(
        "/certificates/{certificate_id}/joins",
        response_model=InvestmentCertificateJoin,
        status_code=status.HTTP_201_CREATED,
        tags=["Certificates"],
    )
    def join_certificate(certificate_id: UUID, request: JoinCertificateRequest) -> InvestmentCertificateJoin:
        return service.certificates.join(
            request.user_id, certificate_id, request.amount, request.balance_type
        )

    @app.post(
        "/certificate-joins/{join_id}/approve",
        response_model=InvestmentCertificateJoin,
        tags=["Certificates"],
    )
    def approve_certificate_join(
        join_id: UUID, request: Optional[AdminActionRequest] = None
    ) -> InvestmentCertificateJoin:
        join = service.certificates.approve(join_id)
        _audit("approve", join_id, request)
        return join

    @app.post(
        "/certificate-joins/{join_id}/reject",
        response_model=InvestmentCertificateJoin,
        tags=["Certificates"],
    )
    def reject_certificate_join(
        join_id: UUID, request: Optional[AdminActionRequest] = None
    ) -> InvestmentCertificateJoin:
        join = service.certificates.reject(join_id)
        _audit("reject", join_id, request)
        return join

    @app.post(
        "/certificate-joins/{join_id}/withdraw",
        response_model=InvestmentCertificateJoin,
        tags=["Certificates"],
    )
    def withdraw_certificate_join(join_id: UUID) -> InvestmentCertificateJoin:
        return service.certificates.withdraw(join_id)

    @app.post("/certificate-joins/{join_id}/credit", response_model=CreditResult, tags=["Certificates"])
    def credit_certificate_join(join_id: UUID) -> CreditResult:
        return service.certificates.credit_due_profit(join_id)

    # Accrual

    @app.post("/accrual/run", response_model=AccrualRunResponse, tags=["Accrual"])
    def run_accrual() -> AccrualRunResponse:
        return service.run_accrual()

    # Users

    @app.get("/users/{user_id}", response_model=User, tags=["Users"])
    def get_user(user_id: UUID) -> User:
        return service.get_user(user_id)

    @app.get("/users/{user_id}/transactions", response_model=TransactionHistoryResponse, tags=["Users"])
    def get_user_transactions(user_id: UUID, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
        return service.get_transaction_history(user_id, limit, offset)

    @app.get("/users/{user_id}/network", response_model=ReferralNetwork, tags=["Users"])
    def get_user_network(user_id: UUID) -> ReferralNetwork:
        return service.referrals.network(user_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
