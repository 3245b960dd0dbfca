import pytest
from sqlalchemy import select

from cinehold.domain.exceptions import (
    HoldExpired,
    HoldNotFound,
    InvalidSelection,
    SeatUnavailable,
)
from cinehold.domain.state_machine import HoldStatus
from cinehold.infrastructure.db.models import SeatClaim
from tests.conftest import A1, A2, A3, B1, B2, C1, SLOT_ID, TIGHT_SLOT_ID, empty_seats


def _claimed(db):
    return set(db.execute(select(SeatClaim.seat_id).where(SeatClaim.slot_id == SLOT_ID)).scalars())


def test_overlapping_hold_fails_and_leaves_other_seats_untouched(db, hold_service):
    hold_service.create(SLOT_ID, [A2], session_id="other")

    first = hold_service.create(SLOT_ID, [A1, A3], session_id="mine")
    assert first.status == HoldStatus.ACTIVE
    assert first.seat_count == 2

    with pytest.raises(SeatUnavailable) as exc_info:
        hold_service.create(SLOT_ID, [A1, A2], session_id="late")

    assert exc_info.value.seat_ids == [A1, A2]
    assert hold_service.seat_repository.seat_ids_for_hold(first.id) == [A1, A3]
    assert empty_seats(db, SLOT_ID) == 2


def test_failed_hold_does_not_touch_counter(db, hold_service):
    hold_service.create(SLOT_ID, [A2], session_id="other")

    with pytest.raises(SeatUnavailable):
        hold_service.create(SLOT_ID, [A1, A2], session_id="late")

    assert empty_seats(db, SLOT_ID) == 4
    assert _claimed(db) == {A2}


def test_broken_and_unknown_seats_are_unavailable(hold_service):
    with pytest.raises(SeatUnavailable):
        hold_service.create(SLOT_ID, [C1], session_id="s1")

    with pytest.raises(SeatUnavailable):
        hold_service.create(SLOT_ID, [999], session_id="s2")


def test_selection_size_limits(hold_service, settings):
    with pytest.raises(InvalidSelection):
        hold_service.create(SLOT_ID, [], session_id="s1")

    settings.max_seats_per_hold = 1
    with pytest.raises(InvalidSelection):
        hold_service.create(SLOT_ID, [A1, A2], session_id="s1")


def test_counter_guard_refuses_oversell(db, hold_service):
    with pytest.raises(SeatUnavailable):
        hold_service.create(TIGHT_SLOT_ID, [A1, A2], session_id="s1")

    hold_service.create(TIGHT_SLOT_ID, [A1], session_id="s1")
    assert empty_seats(db, TIGHT_SLOT_ID) == 0

    with pytest.raises(SeatUnavailable):
        hold_service.create(TIGHT_SLOT_ID, [A3], session_id="s2")


def test_release_is_idempotent(db, hold_service):
    hold = hold_service.create(SLOT_ID, [A1, B1], session_id="s1")

    assert hold_service.release(hold.id) is True
    assert hold_service.release(hold.id) is False

    assert empty_seats(db, SLOT_ID) == 5
    assert _claimed(db) == set()
    assert hold.status == HoldStatus.RELEASED


def test_release_unknown_hold(hold_service):
    with pytest.raises(HoldNotFound):
        hold_service.release("missing")


def test_released_seats_can_be_held_again(hold_service):
    hold = hold_service.create(SLOT_ID, [A1], session_id="s1")
    hold_service.release(hold.id)

    again = hold_service.create(SLOT_ID, [A1], session_id="s2")
    assert hold_service.seat_repository.seat_ids_for_hold(again.id) == [A1]


def test_extend_never_moves_deadline(hold_service, clock):
    hold = hold_service.create(SLOT_ID, [A1], session_id="s1")
    deadline = hold.expires_at

    clock.advance(120)
    assert hold_service.extend(hold.id).expires_at == deadline

    clock.advance(180)
    with pytest.raises(HoldExpired):
        hold_service.extend(hold.id)


def test_sweep_releases_only_overdue_holds(db, hold_service, clock):
    old = hold_service.create(SLOT_ID, [A1], session_id="old")
    clock.advance(200)
    fresh = hold_service.create(SLOT_ID, [A2], session_id="fresh")
    clock.advance(100)

    assert hold_service.sweep_expired() == 1
    assert hold_service.sweep_expired() == 0

    assert hold_service.hold_repository.get_by_id(old.id).status == HoldStatus.EXPIRED
    assert hold_service.hold_repository.get_by_id(fresh.id).status == HoldStatus.ACTIVE
    assert _claimed(db) == {A2}
    assert empty_seats(db, SLOT_ID) == 4


def test_expired_hold_does_not_block_new_hold(hold_service, clock):
    hold_service.create(SLOT_ID, [A1], session_id="old")
    clock.advance(301)

    hold = hold_service.create(SLOT_ID, [A1], session_id="new")
    assert hold.status == HoldStatus.ACTIVE


def test_replace_seats_keeps_deadline_and_counter(db, hold_service, clock):
    hold = hold_service.create(SLOT_ID, [A1, A2], session_id="s1")
    deadline = hold.expires_at
    clock.advance(60)

    hold = hold_service.replace_seats(hold.id, [A2, B1, B2])

    assert hold_service.seat_repository.seat_ids_for_hold(hold.id) == [A2, B1, B2]
    assert hold.seat_count == 3
    assert hold.expires_at.replace(tzinfo=None) == deadline.replace(tzinfo=None)
    assert empty_seats(db, SLOT_ID) == 2


def test_convert_to_sale_marks_seats_sold(hold_service):
    hold = hold_service.create(SLOT_ID, [A1], session_id="s1")

    assert hold_service.convert_to_sale(hold.id) is True
    assert hold_service.release(hold.id) is False

    seats = {seat["id"]: seat["status"] for seat in hold_service.seat_map(SLOT_ID)}
    assert seats[A1] == "sold"


def test_seat_map_statuses(hold_service):
    hold_service.create(SLOT_ID, [A2], session_id="s1")

    seats = {seat["id"]: seat for seat in hold_service.seat_map(SLOT_ID)}

    assert seats[A1]["status"] == "available"
    assert seats[A2]["status"] == "held"
    assert seats[C1]["status"] == "broken"
    assert seats[B1]["type_name"] == "VIP"
