import logging
import secrets
from uuid import uuid4

from sqlalchemy.orm import Session

from cinehold.application.hold_service import ReservationHoldService
from cinehold.domain.clock import is_past, utc_now
from cinehold.domain.exceptions import (
    InvalidSelection,
    InvalidStateTransitionError,
    PromotionRejected,
    SessionExpired,
    SessionNotEditable,
    SessionNotFound,
)
from cinehold.domain.pricing import Breakdown, ComboLine, PricedSeat, compute_total
from cinehold.domain.promotions import check_eligibility
from cinehold.domain.state_machine import CheckoutStateMachine, CheckoutStatus, HoldStatus
from cinehold.infrastructure.config import get_settings
from cinehold.infrastructure.db.models import CheckoutSession, PaymentTransaction, Slot
from cinehold.infrastructure.payments.vnpay import CURRENCY, VNPayGateway
from cinehold.infrastructure.repositories.catalog_repository import CatalogRepository
from cinehold.infrastructure.repositories.checkout_repository import CheckoutRepository
from cinehold.infrastructure.repositories.seat_repository import SeatRepository


logger = logging.getLogger(__name__)


def new_session_token() -> str:
    return secrets.token_urlsafe(24)


def new_order_id() -> str:
    return f"BOOKING_{uuid4().hex[:20].upper()}"


class CheckoutService:
    """
    Application service coordinating one purchase attempt.

    The session token is opaque and server-side; every total the client
    sees is recomputed here from catalog prices and stored snapshots.
    """

    def __init__(self, db: Session, settings=None, gateway_factory=None, clock=utc_now):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.gateway_factory = gateway_factory or (lambda: VNPayGateway.from_settings(self.settings))
        self.holds = ReservationHoldService(db, settings=self.settings, clock=clock)
        self.catalog = CatalogRepository(db)
        self.seat_repository = SeatRepository(db)
        self.checkout_repository = CheckoutRepository(db)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self, slot_id: int, seat_ids: list[int]) -> CheckoutSession:
        self._expire_overdue(slot_id=slot_id)
        session_id = new_session_token()
        hold = self.holds.create(slot_id=slot_id, seat_ids=seat_ids, session_id=session_id)
        session = self.checkout_repository.create_session(
            session_id=session_id,
            slot_id=slot_id,
            hold_id=hold.id,
            expires_at=hold.expires_at,
        )
        logger.info("Checkout started session_id=%s slot_id=%s", session_id, slot_id)
        return session

    def get(self, session_id: str) -> CheckoutSession:
        """Returns the session, expiring it first if its deadline passed."""
        session = self._load(session_id)
        if self._is_overdue(session):
            self.expire(session)
        return session

    def update_seats(self, session_id: str, seat_ids: list[int]) -> CheckoutSession:
        session = self._load_editable(session_id)
        self.holds.replace_seats(session.hold_id, seat_ids)
        return session

    def update_combos(self, session_id: str, items: dict[int, int]) -> CheckoutSession:
        """
        Replaces the combo selection. Products already selected keep the
        unit price captured when they were first picked.
        """
        session = self._load_editable(session_id)
        wanted = {int(product_id): qty for product_id, qty in items.items() if qty > 0}
        existing = {item.product_id: item for item in self.checkout_repository.list_combos(session.id)}

        self.checkout_repository.remove_combos(
            session.id,
            [product_id for product_id in existing if product_id not in wanted],
        )

        new_ids = [product_id for product_id in wanted if product_id not in existing]
        products = self.catalog.get_products(new_ids)
        missing = set(new_ids) - set(products)
        if missing:
            raise ValueError(f"Products {sorted(missing)} not found")

        for product_id, quantity in wanted.items():
            if product_id in existing:
                existing[product_id].quantity = quantity
                continue
            product = products[product_id]
            self.checkout_repository.add_combo(
                session_id=session.id,
                product_id=product.id,
                product_name=product.name,
                unit_price=product.price,
                quantity=quantity,
            )

        self.db.flush()
        return session

    def apply_promotion(self, session_id: str, code: str | None) -> CheckoutSession:
        session = self._load_editable(session_id)
        session.promotion_code = code.strip().upper() if code and code.strip() else None
        self.db.flush()
        return session

    def extend(self, session_id: str) -> CheckoutSession:
        session = self._load_editable(session_id)
        self.holds.extend(session.hold_id)
        return session

    def request_payment(
        self,
        session_id: str,
        ip_addr: str | None,
        bank_code: str | None = None,
        locale: str | None = None,
    ) -> PaymentTransaction:
        """
        Freezes the total and creates the gateway transaction. A repeated
        request while awaiting payment returns the existing transaction.
        """
        session = self._load_active(session_id, for_update=True)

        if session.status == CheckoutStatus.AWAITING_PAYMENT:
            existing = self.checkout_repository.get_pending_transaction(session.id)
            if existing:
                return existing

        CheckoutStateMachine.validate_transition(session.status, CheckoutStatus.AWAITING_PAYMENT)

        gateway = self.gateway_factory()
        breakdown = self.quote(session)
        if breakdown.seat_count == 0:
            raise InvalidSelection("At least one seat must be selected")
        if breakdown.grand_total <= 0:
            raise InvalidSelection("Order total must be greater than zero")

        now = self.clock()
        order_id = new_order_id()
        signed = gateway.build_payment_request(
            order_id=order_id,
            amount=breakdown.grand_total,
            ip_addr=ip_addr,
            created_at=now,
            bank_code=bank_code,
            locale=locale,
        )

        won = self.checkout_repository.compare_and_set_status(
            session.id,
            {CheckoutStatus.SELECTING},
            CheckoutStatus.AWAITING_PAYMENT,
            seat_subtotal=breakdown.seat_subtotal,
            combo_subtotal=breakdown.combo_subtotal,
            discount_amount=breakdown.discount,
            grand_total=breakdown.grand_total,
            promotion_code=breakdown.promotion_code,
        )
        if not won:
            raise InvalidStateTransitionError(session.status.value, CheckoutStatus.AWAITING_PAYMENT.value)

        transaction = self.checkout_repository.create_transaction(
            order_id=order_id,
            session_id=session.id,
            amount=breakdown.grand_total,
            currency=CURRENCY,
            request_params=signed.params,
            payment_url=signed.url,
        )
        logger.info(
            "Payment requested session_id=%s order_id=%s amount=%s",
            session.id,
            order_id,
            breakdown.grand_total,
        )
        return transaction

    def cancel(self, session_id: str) -> CheckoutSession:
        session = self._load(session_id, for_update=True)
        if session.status == CheckoutStatus.CANCELLED:
            return session
        if self._is_overdue(session):
            self.expire(session)
            raise SessionExpired(f"Checkout {session_id} has expired")

        CheckoutStateMachine.validate_transition(session.status, CheckoutStatus.CANCELLED)
        won = self.checkout_repository.compare_and_set_status(
            session.id,
            CheckoutStateMachine.sources_for(CheckoutStatus.CANCELLED),
            CheckoutStatus.CANCELLED,
        )
        if not won:
            raise InvalidStateTransitionError(session.status.value, CheckoutStatus.CANCELLED.value)

        self.holds.release(session.hold_id)
        self.checkout_repository.invalidate_pending_transactions(session.id, self.clock())
        logger.info("Checkout cancelled session_id=%s", session.id)
        return session

    def expire(self, session: CheckoutSession) -> bool:
        won = self.checkout_repository.compare_and_set_status(
            session.id,
            CheckoutStateMachine.sources_for(CheckoutStatus.EXPIRED),
            CheckoutStatus.EXPIRED,
        )
        if not won:
            return False
        self.holds.release(session.hold_id, HoldStatus.EXPIRED)
        self.checkout_repository.invalidate_pending_transactions(session.id, self.clock())
        logger.info("Checkout expired session_id=%s", session.id)
        return True

    def fail(self, session: CheckoutSession) -> bool:
        won = self.checkout_repository.compare_and_set_status(
            session.id,
            {CheckoutStatus.AWAITING_PAYMENT},
            CheckoutStatus.FAILED,
        )
        if won:
            self.holds.release(session.hold_id)
        return won

    def sweep_expired(self, slot_id: int | None = None) -> dict:
        """
        Overdue sessions go first so their holds are released through the
        session transition; what is left are holds no live session owns.
        """
        expired = self._expire_overdue(slot_id=slot_id)
        orphans = self.holds.sweep_expired(slot_id=slot_id)
        return {"sessions_expired": expired, "holds_released": orphans}

    def seat_map(self, slot_id: int) -> list[dict]:
        if not self.catalog.get_slot(slot_id):
            raise ValueError("Slot not found")
        self._expire_overdue(slot_id=slot_id)
        return self.holds.seat_map(slot_id)

    def _expire_overdue(self, slot_id: int | None = None) -> int:
        expired = 0
        for session in self.checkout_repository.list_overdue(self.clock(), slot_id=slot_id):
            if self.expire(session):
                expired += 1
        return expired

    # -----------------------------
    # Pricing
    # -----------------------------
    def quote(self, session: CheckoutSession) -> Breakdown:
        if session.status != CheckoutStatus.SELECTING and session.grand_total is not None:
            return self._frozen_breakdown(session)

        slot = self.catalog.get_slot(session.slot_id)
        if not slot:
            raise ValueError("Slot not found")

        seat_ids = self.seat_repository.seat_ids_for_hold(session.hold_id)
        seats = [
            PricedSeat(seat_id=seat.id, multiplier=seat_type.price_multiplier)
            for seat, seat_type in self.catalog.get_seats(slot.room_id, seat_ids)
        ]
        lines = [
            ComboLine(product_id=item.product_id, unit_price=item.unit_price, quantity=item.quantity)
            for item in self.checkout_repository.list_combos(session.id)
        ]

        terms = None
        rejected = None
        if session.promotion_code:
            try:
                terms = self._promotion_terms(session.promotion_code, slot)
            except PromotionRejected as exc:
                rejected = exc.reason

        return compute_total(slot.base_price, seats, lines, terms, promotion_rejected=rejected)

    def seat_ids(self, session: CheckoutSession) -> list[int]:
        return self.seat_repository.seat_ids_for_hold(session.hold_id)

    def combos(self, session: CheckoutSession):
        return self.checkout_repository.list_combos(session.id)

    def _promotion_terms(self, code: str, slot: Slot):
        promotion = self.catalog.get_promotion_by_code(code)
        return check_eligibility(
            promotion,
            self.clock(),
            movie_id=slot.movie_id,
            cinema_id=slot.cinema_id,
        )

    def _frozen_breakdown(self, session: CheckoutSession) -> Breakdown:
        pre_discount = session.seat_subtotal + session.combo_subtotal
        return Breakdown(
            seat_subtotal=session.seat_subtotal,
            combo_subtotal=session.combo_subtotal,
            pre_discount_total=pre_discount,
            discount=session.discount_amount or 0,
            grand_total=session.grand_total,
            promotion_code=session.promotion_code,
            seat_count=len(self.seat_ids(session)),
        )

    # -----------------------------
    # Loading
    # -----------------------------
    def _is_overdue(self, session: CheckoutSession) -> bool:
        return (
            not CheckoutStateMachine.is_terminal(session.status)
            and is_past(session.expires_at, self.clock())
        )

    def _load(self, session_id: str, for_update: bool = False) -> CheckoutSession:
        session = self.checkout_repository.get_session(session_id, for_update=for_update)
        if not session:
            raise SessionNotFound(f"Checkout {session_id} not found")
        return session

    def _load_active(self, session_id: str, for_update: bool = False) -> CheckoutSession:
        session = self._load(session_id, for_update=for_update)
        if self._is_overdue(session):
            self.expire(session)
            raise SessionExpired(f"Checkout {session_id} has expired")
        if session.status == CheckoutStatus.EXPIRED:
            raise SessionExpired(f"Checkout {session_id} has expired")
        return session

    def _load_editable(self, session_id: str) -> CheckoutSession:
        session = self._load_active(session_id, for_update=True)
        if session.status != CheckoutStatus.SELECTING:
            raise SessionNotEditable(
                f"Checkout {session_id} is {session.status.value} and can no longer be changed"
            )
        return session
