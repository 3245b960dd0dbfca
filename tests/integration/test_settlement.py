import json
from datetime import timedelta

import pytest

from cinehold.application.hold_service import ReservationHoldService
from cinehold.application.settlement_service import (
    PROMOTION_REDEEMED,
    TICKET_ISSUANCE_REQUESTED,
    SettlementOutcome,
)
from cinehold.domain.exceptions import (
    DuplicateCallback,
    GatewayBusinessFailure,
    SeatUnavailable,
    SignatureInvalid,
)
from cinehold.domain.state_machine import CheckoutStatus, HoldStatus, TransactionStatus
from tests.conftest import (
    A1,
    A2,
    B1,
    B2,
    POPCORN,
    SLOT_ID,
    FrozenClock,
    empty_seats,
    signed_callback,
)


@pytest.fixture
def awaiting(checkout_service):
    session = checkout_service.start(SLOT_ID, [B1, B2])
    checkout_service.update_combos(session.id, {POPCORN: 1})
    checkout_service.apply_promotion(session.id, "CAP20K")
    transaction = checkout_service.request_payment(session.id, ip_addr="10.0.0.1")
    return session, transaction


def _outbox(checkout_service, event_type):
    return [
        event
        for event in checkout_service.checkout_repository.list_outbox_events("PENDING", 50)
        if event.event_type == event_type
    ]


def test_successful_callback_settles_and_requests_tickets(
    db, awaiting, checkout_service, settlement_service, gateway
):
    session, transaction = awaiting

    result = settlement_service.handle_callback(
        signed_callback(gateway, transaction.order_id, transaction.amount)
    )

    assert result.outcome == SettlementOutcome.SETTLED
    assert result.session_status == CheckoutStatus.SETTLED
    assert transaction.status == TransactionStatus.SUCCEEDED
    assert transaction.gateway_transaction_no == "14123456"
    assert transaction.bank_code == "NCB"

    hold = checkout_service.holds.hold_repository.get_by_id(session.hold_id)
    assert hold.status == HoldStatus.CONVERTED
    seats = {seat["id"]: seat["status"] for seat in checkout_service.holds.seat_map(SLOT_ID)}
    assert seats[B1] == seats[B2] == "sold"
    assert empty_seats(db, SLOT_ID) == 3

    [ticket_event] = _outbox(checkout_service, TICKET_ISSUANCE_REQUESTED)
    payload = json.loads(ticket_event.payload)
    assert payload["orderId"] == transaction.order_id
    assert payload["seatIds"] == [B1, B2]
    assert payload["slotId"] == SLOT_ID
    assert payload["grandTotal"] == transaction.amount
    assert payload["comboItems"][0]["productId"] == POPCORN

    [promotion_event] = _outbox(checkout_service, PROMOTION_REDEEMED)
    assert json.loads(promotion_event.payload)["code"] == "CAP20K"


def test_duplicate_success_callback_has_no_side_effects(
    db, awaiting, checkout_service, settlement_service, gateway
):
    _, transaction = awaiting
    query = signed_callback(gateway, transaction.order_id, transaction.amount)

    first = settlement_service.handle_callback(query)
    second = settlement_service.handle_callback(query)

    assert first.outcome == SettlementOutcome.SETTLED
    assert second.outcome == SettlementOutcome.DUPLICATE
    assert isinstance(second.error, DuplicateCallback)
    assert len(_outbox(checkout_service, TICKET_ISSUANCE_REQUESTED)) == 1
    assert empty_seats(db, SLOT_ID) == 3

    audit = checkout_service.checkout_repository.list_callbacks(transaction.order_id)
    assert sorted(row.outcome for row in audit) == ["DUPLICATE", "SETTLED"]
    assert audit[0].payload_hash == audit[1].payload_hash


def test_failure_code_releases_hold_once(db, awaiting, checkout_service, settlement_service, gateway):
    session, transaction = awaiting
    query = signed_callback(gateway, transaction.order_id, transaction.amount, response_code="24")

    result = settlement_service.handle_callback(query)
    again = settlement_service.handle_callback(query)

    assert result.outcome == SettlementOutcome.FAILED
    assert isinstance(result.error, GatewayBusinessFailure)
    assert result.error.code == "24"
    assert result.message == "Khách hàng hủy giao dịch"
    assert again.outcome == SettlementOutcome.DUPLICATE

    assert session.status == CheckoutStatus.FAILED
    assert transaction.status == TransactionStatus.FAILED
    assert empty_seats(db, SLOT_ID) == 5
    assert _outbox(checkout_service, TICKET_ISSUANCE_REQUESTED) == []


def test_tampered_callback_is_rejected_and_audited(awaiting, checkout_service, settlement_service, gateway):
    session, transaction = awaiting
    query = signed_callback(gateway, transaction.order_id, transaction.amount)
    query["vnp_ResponseCode"] = "00"
    query["vnp_Amount"] = "100"

    result = settlement_service.handle_callback(query)

    assert result.outcome == SettlementOutcome.REJECTED
    assert isinstance(result.error, SignatureInvalid)
    assert session.status == CheckoutStatus.AWAITING_PAYMENT

    [row] = checkout_service.checkout_repository.list_callbacks(transaction.order_id)
    assert row.signature_valid is False
    assert row.outcome == "REJECTED"


def test_amount_mismatch_does_not_finalise(awaiting, settlement_service, gateway):
    session, transaction = awaiting

    result = settlement_service.handle_callback(
        signed_callback(gateway, transaction.order_id, transaction.amount - 1)
    )

    assert result.outcome == SettlementOutcome.AMOUNT_MISMATCH
    assert session.status == CheckoutStatus.AWAITING_PAYMENT
    assert transaction.status == TransactionStatus.PENDING


def test_unknown_order(settlement_service, gateway):
    result = settlement_service.handle_callback(signed_callback(gateway, "BOOKING_MISSING", 1000))

    assert result.outcome == SettlementOutcome.UNKNOWN_ORDER


def test_callback_after_deadline_expires_session(db, awaiting, settlement_service, gateway, clock):
    session, transaction = awaiting
    clock.advance(301)

    result = settlement_service.handle_callback(
        signed_callback(gateway, transaction.order_id, transaction.amount)
    )

    db.refresh(transaction)
    assert result.outcome == SettlementOutcome.EXPIRED
    assert session.status == CheckoutStatus.EXPIRED
    assert transaction.status == TransactionStatus.INVALIDATED
    assert empty_seats(db, SLOT_ID) == 5


def test_late_callback_after_sweep_is_logged_only(
    db, awaiting, checkout_service, settlement_service, gateway, clock
):
    session, transaction = awaiting
    clock.advance(301)
    checkout_service.sweep_expired()

    result = settlement_service.handle_callback(
        signed_callback(gateway, transaction.order_id, transaction.amount)
    )

    assert result.outcome == SettlementOutcome.LATE
    assert session.status == CheckoutStatus.EXPIRED
    assert _outbox(checkout_service, TICKET_ISSUANCE_REQUESTED) == []
    assert [row.outcome for row in checkout_service.checkout_repository.list_callbacks(transaction.order_id)] == [
        "LATE"
    ]


def test_callback_for_cancelled_session_is_duplicate(awaiting, checkout_service, settlement_service, gateway):
    session, transaction = awaiting
    checkout_service.cancel(session.id)

    result = settlement_service.handle_callback(
        signed_callback(gateway, transaction.order_id, transaction.amount)
    )

    assert result.outcome == SettlementOutcome.DUPLICATE
    assert session.status == CheckoutStatus.CANCELLED


def test_second_session_cannot_take_sold_seats(awaiting, checkout_service, settlement_service, gateway):
    _, transaction = awaiting
    settlement_service.handle_callback(signed_callback(gateway, transaction.order_id, transaction.amount))

    with pytest.raises(SeatUnavailable):
        checkout_service.start(SLOT_ID, [A1, B1])

    assert checkout_service.start(SLOT_ID, [A1, A2]).status == CheckoutStatus.SELECTING


def test_hold_sweep_does_not_release_seats_of_awaiting_session(
    db, awaiting, checkout_service, settlement_service, gateway, settings, clock
):
    _, transaction = awaiting
    clock.advance(299)
    other_worker = ReservationHoldService(
        db,
        settings=settings,
        clock=FrozenClock(clock() + timedelta(seconds=1)),
    )

    assert other_worker.sweep_expired(slot_id=SLOT_ID) == 0

    result = settlement_service.handle_callback(
        signed_callback(gateway, transaction.order_id, transaction.amount)
    )

    assert result.outcome == SettlementOutcome.SETTLED
    seats = {seat["id"]: seat["status"] for seat in checkout_service.holds.seat_map(SLOT_ID)}
    assert seats[B1] == seats[B2] == "sold"
    assert empty_seats(db, SLOT_ID) == 3


def test_success_callback_without_live_hold_expires_instead_of_settling(
    db, awaiting, checkout_service, settlement_service, gateway
):
    session, transaction = awaiting
    checkout_service.holds.release(session.hold_id, HoldStatus.EXPIRED)

    result = settlement_service.handle_callback(
        signed_callback(gateway, transaction.order_id, transaction.amount)
    )

    db.refresh(transaction)
    assert result.outcome == SettlementOutcome.EXPIRED
    assert session.status == CheckoutStatus.EXPIRED
    assert transaction.status == TransactionStatus.INVALIDATED
    assert _outbox(checkout_service, TICKET_ISSUANCE_REQUESTED) == []
    assert _outbox(checkout_service, PROMOTION_REDEEMED) == []
    seats = {seat["id"]: seat["status"] for seat in checkout_service.holds.seat_map(SLOT_ID)}
    assert seats[B1] == seats[B2] == "available"
    assert empty_seats(db, SLOT_ID) == 5
