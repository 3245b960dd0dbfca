import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from cinehold.api.schemas.schemas import (
    CheckoutCreateRequest,
    CheckoutResponse,
    ComboLineResponse,
    ComboSelectionRequest,
    OutboxEventResponse,
    PaymentStartRequest,
    PaymentStartResponse,
    PromotionRequest,
    QuoteResponse,
    SeatMapEntry,
    SeatSelectionRequest,
    SweepResponse,
)
from cinehold.application.checkout_service import CheckoutService
from cinehold.application.settlement_service import SettlementOutcome, SettlementService
from cinehold.domain.clock import utc_now
from cinehold.domain.exceptions import (
    CheckoutCoreError,
    HoldExpired,
    HoldNotFound,
    InvalidSelection,
    InvalidStateTransitionError,
    PaymentConfigurationError,
    SeatUnavailable,
    SessionExpired,
    SessionNotEditable,
    SessionNotFound,
)
from cinehold.domain.state_machine import CheckoutStatus
from cinehold.infrastructure.config import get_settings
from cinehold.infrastructure.db.models import CheckoutSession, OutboxEvent
from cinehold.infrastructure.db.session import SessionLocal
from cinehold.infrastructure.payments.vnpay import VNPayGateway
from cinehold.infrastructure.repositories.checkout_repository import CheckoutRepository


router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (SeatUnavailable, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (SessionNotEditable, status.HTTP_409_CONFLICT),
    (SessionNotFound, status.HTTP_404_NOT_FOUND),
    (HoldNotFound, status.HTTP_404_NOT_FOUND),
    (SessionExpired, status.HTTP_410_GONE),
    (HoldExpired, status.HTTP_410_GONE),
    (InvalidSelection, status.HTTP_400_BAD_REQUEST),
    (PaymentConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)

_IPN_RESPONSES = {
    SettlementOutcome.SETTLED: ("00", "Confirm Success"),
    SettlementOutcome.FAILED: ("00", "Confirm Success"),
    SettlementOutcome.EXPIRED: ("00", "Confirm Success"),
    SettlementOutcome.DUPLICATE: ("00", "Order already confirmed"),
    SettlementOutcome.LATE: ("00", "Order already confirmed"),
    SettlementOutcome.UNKNOWN_ORDER: ("01", "Order not found"),
    SettlementOutcome.AMOUNT_MISMATCH: ("04", "Invalid amount"),
    SettlementOutcome.REJECTED: ("97", "Invalid signature"),
}


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_app_settings():
    return get_settings()


def get_clock():
    return utc_now


def get_gateway_factory(settings=Depends(get_app_settings)):
    return lambda: VNPayGateway.from_settings(settings)


def get_checkout_service(
    db: Session = Depends(get_db),
    settings=Depends(get_app_settings),
    gateway_factory=Depends(get_gateway_factory),
    clock=Depends(get_clock),
) -> CheckoutService:
    return CheckoutService(db, settings=settings, gateway_factory=gateway_factory, clock=clock)


def _http_error(exc: Exception, db: Session) -> HTTPException:
    if isinstance(exc, SessionExpired):
        # The lazy expiry must survive the rollback that follows the raise.
        db.commit()
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _checkout_response(service: CheckoutService, session: CheckoutSession) -> CheckoutResponse:
    breakdown = service.quote(session)
    combos = service.combos(session)
    return CheckoutResponse(
        token=session.id,
        slot_id=session.slot_id,
        hold_id=session.hold_id,
        status=session.status.value,
        seat_ids=service.seat_ids(session),
        combos=[
            ComboLineResponse(
                product_id=item.product_id,
                name=item.product_name,
                unit_price=item.unit_price,
                quantity=item.quantity,
                line_total=item.unit_price * item.quantity,
            )
            for item in combos
        ],
        promotion_code=session.promotion_code,
        quote=QuoteResponse(
            seat_subtotal=breakdown.seat_subtotal,
            combo_subtotal=breakdown.combo_subtotal,
            pre_discount_total=breakdown.pre_discount_total,
            discount=breakdown.discount,
            grand_total=breakdown.grand_total,
            promotion_code=breakdown.promotion_code,
            promotion_rejected=breakdown.promotion_rejected,
        ),
        expires_at=session.expires_at.isoformat(),
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Cinehold checkout core is running"}


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = CheckoutRepository(db).list_outbox_events(status_filter, safe_limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    item = CheckoutRepository(db).get_outbox_event(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    item.status = "PUBLISHED"
    item.published_at = clock()
    item.attempts += 1
    db.flush()
    return _outbox_response(item)


@router.get("/slots/{slot_id}/seats", response_model=list[SeatMapEntry])
def get_seat_map(slot_id: int, service: CheckoutService = Depends(get_checkout_service)):
    try:
        seats = service.seat_map(slot_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return [SeatMapEntry(**seat) for seat in seats]


@router.post("/holds/sweep", response_model=SweepResponse)
def sweep_expired_holds(service: CheckoutService = Depends(get_checkout_service)):
    return SweepResponse(**service.sweep_expired())


@router.post("/checkout", response_model=CheckoutResponse)
def start_checkout(
    request: CheckoutCreateRequest,
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        session = service.start(slot_id=request.slot_id, seat_ids=request.seat_ids)
    except (CheckoutCoreError, ValueError) as exc:
        raise _http_error(exc, db) from exc
    return _checkout_response(service, session)


@router.get("/checkout/{token}", response_model=CheckoutResponse)
def get_checkout(
    token: str,
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        session = service.get(token)
    except (CheckoutCoreError, ValueError) as exc:
        raise _http_error(exc, db) from exc
    return _checkout_response(service, session)


@router.put("/checkout/{token}/seats", response_model=CheckoutResponse)
def update_checkout_seats(
    token: str,
    request: SeatSelectionRequest,
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        session = service.update_seats(token, request.seat_ids)
    except (CheckoutCoreError, ValueError) as exc:
        raise _http_error(exc, db) from exc
    return _checkout_response(service, session)


@router.put("/checkout/{token}/combos", response_model=CheckoutResponse)
def update_checkout_combos(
    token: str,
    request: ComboSelectionRequest,
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        session = service.update_combos(token, request.items)
    except (CheckoutCoreError, ValueError) as exc:
        raise _http_error(exc, db) from exc
    return _checkout_response(service, session)


@router.put("/checkout/{token}/promotion", response_model=CheckoutResponse)
def apply_checkout_promotion(
    token: str,
    request: PromotionRequest,
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        session = service.apply_promotion(token, request.code)
    except (CheckoutCoreError, ValueError) as exc:
        raise _http_error(exc, db) from exc
    return _checkout_response(service, session)


@router.post("/checkout/{token}/extend", response_model=CheckoutResponse)
def extend_checkout(
    token: str,
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        session = service.extend(token)
    except (CheckoutCoreError, ValueError) as exc:
        raise _http_error(exc, db) from exc
    return _checkout_response(service, session)


@router.post("/checkout/{token}/payment", response_model=PaymentStartResponse)
def start_checkout_payment(
    token: str,
    request: Request,
    payload: PaymentStartRequest | None = None,
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    payload = payload or PaymentStartRequest()
    try:
        transaction = service.request_payment(
            token,
            ip_addr=_client_ip(request),
            bank_code=payload.bank_code,
            locale=payload.locale,
        )
    except (CheckoutCoreError, ValueError) as exc:
        raise _http_error(exc, db) from exc

    return PaymentStartResponse(
        token=token,
        order_id=transaction.order_id,
        amount=transaction.amount,
        currency=transaction.currency,
        payment_url=transaction.payment_url,
        status=transaction.status.value,
    )


@router.post("/checkout/{token}/cancel", response_model=CheckoutResponse)
def cancel_checkout(
    token: str,
    db: Session = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        session = service.cancel(token)
    except (CheckoutCoreError, ValueError) as exc:
        raise _http_error(exc, db) from exc
    return _checkout_response(service, session)


def _settlement_service(db, settings, gateway_factory, clock) -> SettlementService:
    try:
        gateway = gateway_factory()
    except PaymentConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return SettlementService(db, gateway, settings=settings, clock=clock)


@router.get("/api/payment/vnpay/return")
def vnpay_return(
    request: Request,
    db: Session = Depends(get_db),
    settings=Depends(get_app_settings),
    gateway_factory=Depends(get_gateway_factory),
    clock=Depends(get_clock),
):
    service = _settlement_service(db, settings, gateway_factory, clock)
    result = service.handle_callback(dict(request.query_params))

    if result.outcome == SettlementOutcome.REJECTED:
        query = {"error": "verification_failed"}
        if result.order_id:
            query["orderId"] = result.order_id
        return RedirectResponse(
            f"{settings.public_url}/payment/failed?{urlencode(query)}",
            status_code=status.HTTP_302_FOUND,
        )

    if result.session_status == CheckoutStatus.SETTLED:
        return RedirectResponse(
            f"{settings.public_url}/payment/success?{urlencode({'orderId': result.order_id})}",
            status_code=status.HTTP_302_FOUND,
        )

    query = {
        "orderId": result.order_id or "",
        "responseCode": result.response_code or "",
        "message": result.message,
    }
    return RedirectResponse(
        f"{settings.public_url}/payment/failed?{urlencode(query)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/api/payment/vnpay/ipn")
def vnpay_ipn(
    request: Request,
    db: Session = Depends(get_db),
    settings=Depends(get_app_settings),
    gateway_factory=Depends(get_gateway_factory),
    clock=Depends(get_clock),
):
    service = _settlement_service(db, settings, gateway_factory, clock)
    result = service.handle_callback(dict(request.query_params))
    code, message = _IPN_RESPONSES[result.outcome]
    return {"RspCode": code, "Message": message}
