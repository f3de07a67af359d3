import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware

from earn_rules.rule_engine import TriggerEvent

from .config import load_points_config
from .errors import (
    InsufficientBalanceError,
    LedgerServiceError,
    LedgerUnavailableError,
    PointsDisabledError,
)
from .logging_config import setup_logging
from .models import (
    AccountBalance,
    AccrualResult,
    AwardPointsRequest,
    LedgerHistoryResponse,
    PointsEventRequest,
    ReconciliationReport,
    RedeemPointsRequest,
    RedemptionQuote,
    RedemptionResult,
)
from .service import PointsService
from .store import MAX_HISTORY_LIMIT

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Loyalty Points API",
    description="Points ledger with idempotent accrual and balance-safe redemption",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_points_service: Optional[PointsService] = None


def get_points_service() -> PointsService:
    global _points_service
    if _points_service is None:
        setup_logging()
        _points_service = PointsService.from_config(load_points_config())
    return _points_service


def _http_error(e: LedgerServiceError) -> HTTPException:
    if isinstance(e, InsufficientBalanceError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, PointsDisabledError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, LedgerUnavailableError):
        logger.error("Ledger unavailable: %s", e)
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ledger temporarily unavailable")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "loyalty-points"}


@app.get("/accounts/{account_id}/balance", response_model=AccountBalance, tags=["Accounts"])
def get_balance(account_id: str, service: PointsService = Depends(get_points_service)) -> AccountBalance:
    try:
        return service.get_account(account_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/history", response_model=LedgerHistoryResponse, tags=["Accounts"])
def get_history(
    account_id: str,
    limit: int = Query(50, ge=1, le=MAX_HISTORY_LIMIT),
    offset: int = Query(0, ge=0),
    service: PointsService = Depends(get_points_service),
) -> LedgerHistoryResponse:
    try:
        return service.get_history(account_id, limit=limit, offset=offset)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/reconcile", response_model=ReconciliationReport, tags=["Accounts"])
def reconcile(account_id: str, service: PointsService = Depends(get_points_service)) -> ReconciliationReport:
    try:
        return service.reconcile(account_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/accounts/{account_id}/award", response_model=AccrualResult, status_code=status.HTTP_201_CREATED, tags=["Points"])
def award_points(
    account_id: str,
    request: AwardPointsRequest,
    response: Response,
    service: PointsService = Depends(get_points_service),
) -> AccrualResult:
    try:
        result = service.accrual.award(
            account_id, request.amount, request.description, request.related_order_id,
            reason_code=request.reason_code,
        )
    except LedgerServiceError as e:
        raise _http_error(e)
    if not result.applied:
        response.status_code = status.HTTP_200_OK
    return result


@app.post("/accounts/{account_id}/redeem", response_model=RedemptionResult, tags=["Points"])
def redeem_points(
    account_id: str,
    request: RedeemPointsRequest,
    service: PointsService = Depends(get_points_service),
) -> RedemptionResult:
    try:
        return service.redemption.redeem(
            account_id, request.points, request.currency, request.description,
            idempotency_key=request.idempotency_key,
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/redemptions/quote", response_model=RedemptionQuote, tags=["Points"])
def quote_redemption(
    points: int = Query(..., gt=0),
    currency: str = Query("USD"),
    service: PointsService = Depends(get_points_service),
) -> RedemptionQuote:
    try:
        return service.redemption.quote(points, currency)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/events/{trigger}", response_model=list[AccrualResult], tags=["Events"])
def handle_event(
    trigger: TriggerEvent,
    request: PointsEventRequest,
    service: PointsService = Depends(get_points_service),
) -> list[AccrualResult]:
    try:
        return service.accrual.handle_event(trigger, request.context)
    except LedgerServiceError as e:
        raise _http_error(e)
