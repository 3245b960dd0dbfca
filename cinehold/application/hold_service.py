import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cinehold.domain.clock import is_past, utc_now
from cinehold.domain.exceptions import (
    HoldExpired,
    HoldNotFound,
    InvalidSelection,
    SeatUnavailable,
)
from cinehold.domain.state_machine import HoldStatus
from cinehold.infrastructure.config import get_settings
from cinehold.infrastructure.db.models import ReservationHold, Slot
from cinehold.infrastructure.repositories.catalog_repository import CatalogRepository
from cinehold.infrastructure.repositories.hold_repository import HoldRepository
from cinehold.infrastructure.repositories.seat_repository import SeatRepository


logger = logging.getLogger(__name__)


class ReservationHoldService:
    """
    Time-bounded exclusive claims on seats for one slot.

    Seat exclusivity and the empty-seat counter are changed in the same
    database transaction; the unique (slot, seat) claim key and guarded
    UPDATEs decide concurrent races, never in-process locks.
    """

    def __init__(self, db: Session, settings=None, clock=utc_now):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.catalog = CatalogRepository(db)
        self.seat_repository = SeatRepository(db)
        self.hold_repository = HoldRepository(db)

    def create(self, slot_id: int, seat_ids: list[int], session_id: str) -> ReservationHold:
        seat_ids = sorted(set(seat_ids))
        self._check_selection_size(seat_ids)

        slot = self.catalog.get_slot(slot_id)
        if not slot:
            raise ValueError("Slot not found")

        self.sweep_expired(slot_id=slot_id)
        self._ensure_selectable(slot, seat_ids)

        if not self.seat_repository.decrement_empty_seats(slot_id, len(seat_ids)):
            raise SeatUnavailable(seat_ids, "Not enough empty seats left for this slot")

        now = self.clock()
        hold = self.hold_repository.create_hold(
            slot_id=slot_id,
            session_id=session_id,
            seat_count=len(seat_ids),
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.hold_ttl_seconds),
        )
        self._claim(slot_id, hold.id, seat_ids)

        logger.info(
            "Hold created hold_id=%s slot_id=%s seats=%s expires_at=%s",
            hold.id,
            slot_id,
            seat_ids,
            hold.expires_at.isoformat(),
        )
        return hold

    def extend(self, hold_id: str) -> ReservationHold:
        """
        Holds are never lengthened past their original deadline; this only
        confirms the hold is still alive.
        """
        hold = self.hold_repository.get_by_id(hold_id)
        if not hold:
            raise HoldNotFound(f"Hold {hold_id} not found")
        if hold.status != HoldStatus.ACTIVE or is_past(hold.expires_at, self.clock()):
            raise HoldExpired(f"Hold {hold_id} has expired")
        return hold

    def replace_seats(self, hold_id: str, seat_ids: list[int]) -> ReservationHold:
        hold = self.extend(hold_id)
        seat_ids = sorted(set(seat_ids))
        self._check_selection_size(seat_ids)

        current = set(self.seat_repository.seat_ids_for_hold(hold_id))
        to_add = sorted(set(seat_ids) - current)
        to_remove = sorted(current - set(seat_ids))

        if to_remove:
            removed = self.seat_repository.delete_claims(hold_id, to_remove)
            self.seat_repository.increment_empty_seats(hold.slot_id, removed)
            self.hold_repository.adjust_seat_count(hold_id, -removed)

        if to_add:
            slot = self.catalog.get_slot(hold.slot_id)
            if not slot:
                raise ValueError("Slot not found")
            self._ensure_selectable(slot, to_add, exclude_hold_id=hold_id)
            if not self.seat_repository.decrement_empty_seats(hold.slot_id, len(to_add)):
                raise SeatUnavailable(to_add, "Not enough empty seats left for this slot")
            self._claim(hold.slot_id, hold_id, to_add)
            self.hold_repository.adjust_seat_count(hold_id, len(to_add))

        self.db.refresh(hold)
        logger.info("Hold seats replaced hold_id=%s added=%s removed=%s", hold_id, to_add, to_remove)
        return hold

    def release(
        self,
        hold_id: str,
        final_status: HoldStatus = HoldStatus.RELEASED,
        expected: HoldStatus = HoldStatus.ACTIVE,
    ) -> bool:
        """
        Idempotent. Returns True only for the caller that won the
        expected -> final_status transition; everyone else is a no-op.
        Passing expected=CONVERTED gives sold seats back.
        """
        hold = self.hold_repository.get_by_id(hold_id)
        if not hold:
            raise HoldNotFound(f"Hold {hold_id} not found")

        if not self.hold_repository.compare_and_set_status(hold_id, expected, final_status):
            logger.debug("Hold already finalised hold_id=%s status=%s", hold_id, hold.status.value)
            return False

        released = self.seat_repository.delete_claims(hold_id)
        if released:
            self.seat_repository.increment_empty_seats(hold.slot_id, released)

        logger.info(
            "Hold released hold_id=%s slot_id=%s seats=%s status=%s",
            hold_id,
            hold.slot_id,
            released,
            final_status.value,
        )
        return True

    def convert_to_sale(self, hold_id: str) -> bool:
        """Held seats become sold; the counter stays decremented for good."""
        if not self.hold_repository.compare_and_set_status(hold_id, HoldStatus.ACTIVE, HoldStatus.CONVERTED):
            return False
        sold = self.seat_repository.mark_claims_sold(hold_id)
        logger.info("Hold converted to sale hold_id=%s seats=%s", hold_id, sold)
        return True

    def sweep_expired(self, slot_id: int | None = None) -> int:
        """Releases overdue holds that no live checkout session owns."""
        released = 0
        for hold in self.hold_repository.list_expired_orphans(self.clock(), slot_id=slot_id):
            if self.release(hold.id, HoldStatus.EXPIRED):
                released += 1
        if released:
            logger.info("Swept %s expired holds slot_id=%s", released, slot_id)
        return released

    def seat_map(self, slot_id: int) -> list[dict]:
        slot = self.catalog.get_slot(slot_id)
        if not slot:
            raise ValueError("Slot not found")

        self.sweep_expired(slot_id=slot_id)
        claims = self.seat_repository.claims_for_slot(slot_id)

        seats = []
        for seat, seat_type in self.catalog.list_room_seats(slot.room_id):
            if seat.status == "broken":
                status = "broken"
            elif seat.id in claims:
                status = claims[seat.id].status
            else:
                status = "available"
            seats.append(
                {
                    "id": seat.id,
                    "row": seat.seat_row,
                    "number": seat.seat_number,
                    "type_id": seat_type.id,
                    "type_name": seat_type.name,
                    "price_multiplier": seat_type.price_multiplier,
                    "status": status,
                }
            )
        return seats

    def _check_selection_size(self, seat_ids: list[int]) -> None:
        if not seat_ids:
            raise InvalidSelection("At least one seat must be selected")
        if len(seat_ids) > self.settings.max_seats_per_hold:
            raise InvalidSelection(
                f"Cannot hold more than {self.settings.max_seats_per_hold} seats at once"
            )

    def _ensure_selectable(
        self,
        slot: Slot,
        seat_ids: list[int],
        exclude_hold_id: str | None = None,
    ) -> None:
        rows = self.catalog.get_seats(slot.room_id, seat_ids)
        found = {seat.id for seat, _ in rows}

        missing = set(seat_ids) - found
        if missing:
            raise SeatUnavailable(missing, f"Seats {sorted(missing)} do not exist in this room")

        broken = {seat.id for seat, _ in rows if seat.status == "broken"}
        if broken:
            raise SeatUnavailable(broken)

        taken = self.seat_repository.conflicting_seat_ids(
            slot.id,
            seat_ids,
            exclude_hold_id=exclude_hold_id,
        )
        if taken:
            raise SeatUnavailable(taken)

    def _claim(self, slot_id: int, hold_id: str, seat_ids: list[int]) -> None:
        try:
            self.seat_repository.add_claims(slot_id, hold_id, seat_ids)
        except IntegrityError as exc:
            # A concurrent hold committed one of these seats first.
            self.db.rollback()
            raise SeatUnavailable(seat_ids) from exc
