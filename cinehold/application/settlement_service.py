import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.orm import Session

from cinehold.application.checkout_service import CheckoutService
from cinehold.domain.clock import is_past, utc_now
from cinehold.domain.exceptions import (
    CheckoutCoreError,
    DuplicateCallback,
    GatewayBusinessFailure,
    SignatureInvalid,
)
from cinehold.domain.state_machine import (
    CheckoutStateMachine,
    CheckoutStatus,
    HoldStatus,
    TransactionStatus,
)
from cinehold.infrastructure.config import get_settings
from cinehold.infrastructure.db.models import CheckoutSession, PaymentTransaction
from cinehold.infrastructure.payments.vnpay import VerifiedCallback, VNPayGateway, response_message
from cinehold.infrastructure.repositories.checkout_repository import CheckoutRepository


logger = logging.getLogger(__name__)

TICKET_ISSUANCE_REQUESTED = "TICKET_ISSUANCE_REQUESTED"
PROMOTION_REDEEMED = "PROMOTION_REDEEMED"


class SettlementOutcome(str, Enum):
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    DUPLICATE = "DUPLICATE"
    LATE = "LATE"
    REJECTED = "REJECTED"
    UNKNOWN_ORDER = "UNKNOWN_ORDER"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"


@dataclass
class SettlementResult:
    outcome: SettlementOutcome
    order_id: str | None
    response_code: str | None = None
    message: str = ""
    session_status: CheckoutStatus | None = None
    error: CheckoutCoreError | None = None


def hash_callback_payload(query: Mapping[str, str]) -> str:
    encoded = json.dumps(dict(query), sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class SettlementService:
    """
    Finalises a checkout session from a gateway callback.

    Every callback is written to the audit table, whatever its fate. Only
    the caller that wins the AWAITING_PAYMENT compare-and-swap applies side
    effects, so replays and late arrivals are acknowledged without any.
    Rejections are returned rather than raised so the audit row commits.
    """

    def __init__(self, db: Session, gateway: VNPayGateway, settings=None, clock=utc_now):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.clock = clock
        self.checkout = CheckoutService(
            db,
            settings=self.settings,
            gateway_factory=lambda: gateway,
            clock=clock,
        )
        self.checkout_repository = CheckoutRepository(db)

    def handle_callback(self, query: Mapping[str, str]) -> SettlementResult:
        payload_hash = hash_callback_payload(query)

        try:
            callback = self.gateway.verify_callback(query)
        except SignatureInvalid as exc:
            result = SettlementResult(
                outcome=SettlementOutcome.REJECTED,
                order_id=query.get("vnp_TxnRef"),
                response_code=query.get("vnp_ResponseCode"),
                message=str(exc),
                error=exc,
            )
            self._audit(result, signature_valid=False, payload_hash=payload_hash)
            return result

        result = self._settle(callback)
        self._audit(result, signature_valid=True, payload_hash=payload_hash)
        return result

    def _settle(self, callback: VerifiedCallback) -> SettlementResult:
        transaction = None
        if callback.order_id:
            transaction = self.checkout_repository.get_transaction(callback.order_id, for_update=True)
        if not transaction:
            logger.warning("Callback for unknown order order_id=%s", callback.order_id)
            return SettlementResult(
                outcome=SettlementOutcome.UNKNOWN_ORDER,
                order_id=callback.order_id,
                response_code=callback.response_code,
                message="Order not found",
            )

        session = self.checkout_repository.get_session(transaction.session_id, for_update=True)

        if (
            CheckoutStateMachine.is_terminal(session.status)
            or transaction.status != TransactionStatus.PENDING
        ):
            return self._already_final(callback, session, transaction)

        if callback.amount_minor != transaction.amount * 100:
            logger.warning(
                "Callback amount mismatch order_id=%s expected=%s received=%s",
                transaction.order_id,
                transaction.amount * 100,
                callback.amount_minor,
            )
            return SettlementResult(
                outcome=SettlementOutcome.AMOUNT_MISMATCH,
                order_id=transaction.order_id,
                response_code=callback.response_code,
                message="Invalid amount",
                session_status=session.status,
            )

        if is_past(session.expires_at, self.clock()):
            self.checkout.expire(session)
            logger.info("Callback arrived after deadline order_id=%s", transaction.order_id)
            return SettlementResult(
                outcome=SettlementOutcome.EXPIRED,
                order_id=transaction.order_id,
                response_code=callback.response_code,
                message=response_message("13"),
                session_status=session.status,
            )

        if callback.is_success:
            return self._apply_success(callback, session, transaction)
        return self._apply_failure(callback, session, transaction)

    def _already_final(
        self,
        callback: VerifiedCallback,
        session: CheckoutSession,
        transaction: PaymentTransaction,
    ) -> SettlementResult:
        late = session.status == CheckoutStatus.EXPIRED
        outcome = SettlementOutcome.LATE if late else SettlementOutcome.DUPLICATE
        logger.info(
            "Callback ignored order_id=%s outcome=%s session_status=%s",
            transaction.order_id,
            outcome.value,
            session.status.value,
        )
        return SettlementResult(
            outcome=outcome,
            order_id=transaction.order_id,
            response_code=callback.response_code,
            message=callback.message,
            session_status=session.status,
            error=DuplicateCallback(
                f"Order {transaction.order_id} already {session.status.value}"
            ),
        )

    def _apply_success(
        self,
        callback: VerifiedCallback,
        session: CheckoutSession,
        transaction: PaymentTransaction,
    ) -> SettlementResult:
        now = self.clock()
        if not self.checkout.holds.convert_to_sale(session.hold_id):
            # The seats are no longer held for this session.
            self.checkout.expire(session)
            logger.warning(
                "Callback found hold already released order_id=%s hold_id=%s",
                transaction.order_id,
                session.hold_id,
            )
            return SettlementResult(
                outcome=SettlementOutcome.EXPIRED,
                order_id=transaction.order_id,
                response_code=callback.response_code,
                message=response_message("13"),
                session_status=session.status,
            )

        won = self.checkout_repository.compare_and_set_status(
            session.id,
            {CheckoutStatus.AWAITING_PAYMENT},
            CheckoutStatus.SETTLED,
        )
        if not won:
            self.checkout.holds.release(session.hold_id, expected=HoldStatus.CONVERTED)
            return self._already_final(callback, session, transaction)

        self.checkout_repository.finalize_transaction(
            transaction.order_id,
            TransactionStatus.SUCCEEDED,
            response_code=callback.response_code,
            gateway_transaction_no=callback.transaction_no,
            bank_code=callback.bank_code,
            card_type=callback.card_type,
            finalized_at=now,
        )
        self._emit_settled_events(session, transaction)

        logger.info(
            "Checkout settled session_id=%s order_id=%s amount=%s",
            session.id,
            transaction.order_id,
            transaction.amount,
        )
        return SettlementResult(
            outcome=SettlementOutcome.SETTLED,
            order_id=transaction.order_id,
            response_code=callback.response_code,
            message=callback.message,
            session_status=session.status,
        )

    def _apply_failure(
        self,
        callback: VerifiedCallback,
        session: CheckoutSession,
        transaction: PaymentTransaction,
    ) -> SettlementResult:
        if not self.checkout.fail(session):
            return self._already_final(callback, session, transaction)

        self.checkout_repository.finalize_transaction(
            transaction.order_id,
            TransactionStatus.FAILED,
            response_code=callback.response_code,
            gateway_transaction_no=callback.transaction_no,
            bank_code=callback.bank_code,
            card_type=callback.card_type,
            finalized_at=self.clock(),
        )
        logger.info(
            "Checkout payment failed session_id=%s order_id=%s code=%s",
            session.id,
            transaction.order_id,
            callback.response_code,
        )
        return SettlementResult(
            outcome=SettlementOutcome.FAILED,
            order_id=transaction.order_id,
            response_code=callback.response_code,
            message=callback.message,
            session_status=session.status,
            error=GatewayBusinessFailure(callback.response_code or "", callback.message),
        )

    def _emit_settled_events(self, session: CheckoutSession, transaction: PaymentTransaction) -> None:
        combos = self.checkout.combos(session)
        self.checkout_repository.add_outbox_event(
            aggregate_type="checkout_session",
            aggregate_id=session.id,
            event_type=TICKET_ISSUANCE_REQUESTED,
            payload={
                "orderId": transaction.order_id,
                "slotId": session.slot_id,
                "seatIds": self.checkout.seat_ids(session),
                "comboItems": [
                    {
                        "productId": item.product_id,
                        "name": item.product_name,
                        "unitPrice": item.unit_price,
                        "quantity": item.quantity,
                    }
                    for item in combos
                ],
                "grandTotal": session.grand_total,
            },
            dedupe_key=f"checkout:{session.id}:ticket_issuance",
        )

        if session.promotion_code and session.discount_amount:
            self.checkout_repository.add_outbox_event(
                aggregate_type="checkout_session",
                aggregate_id=session.id,
                event_type=PROMOTION_REDEEMED,
                payload={
                    "orderId": transaction.order_id,
                    "code": session.promotion_code,
                    "discountAmount": session.discount_amount,
                },
                dedupe_key=f"checkout:{session.id}:promotion_redeemed",
            )

    def _audit(self, result: SettlementResult, signature_valid: bool, payload_hash: str) -> None:
        self.checkout_repository.record_callback(
            provider=self.gateway.provider,
            order_id=result.order_id,
            response_code=result.response_code,
            signature_valid=signature_valid,
            outcome=result.outcome.value,
            payload_hash=payload_hash,
        )
