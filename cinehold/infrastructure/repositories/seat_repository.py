# cinehold/infrastructure/repositories/seat_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import delete, select, update

from cinehold.infrastructure.db.models import SeatClaim, Slot


class SeatRepository:
    """
    Per-slot seat state and the slot's empty-seat counter.

    Every write here is a single guarded statement so that the
    database, not the process, decides which concurrent caller wins.
    """

    def __init__(self, db: Session):
        self.db = db

    def claims_for_slot(self, slot_id: int) -> dict[int, SeatClaim]:
        stmt = (
            select(SeatClaim)
            .where(SeatClaim.slot_id == slot_id)
            .execution_options(populate_existing=True)
        )
        return {claim.seat_id: claim for claim in self.db.execute(stmt).scalars().all()}

    def conflicting_seat_ids(
        self,
        slot_id: int,
        seat_ids: list[int],
        exclude_hold_id: str | None = None,
    ) -> set[int]:
        if not seat_ids:
            return set()
        stmt = (
            select(SeatClaim.seat_id)
            .where(SeatClaim.slot_id == slot_id)
            .where(SeatClaim.seat_id.in_(seat_ids))
        )
        if exclude_hold_id is not None:
            stmt = stmt.where(SeatClaim.hold_id != exclude_hold_id)
        return set(self.db.execute(stmt).scalars().all())

    def seat_ids_for_hold(self, hold_id: str) -> list[int]:
        stmt = (
            select(SeatClaim.seat_id)
            .where(SeatClaim.hold_id == hold_id)
            .order_by(SeatClaim.seat_id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add_claims(self, slot_id: int, hold_id: str, seat_ids: list[int]) -> None:
        """Flushes immediately so a unique violation surfaces here."""
        for seat_id in seat_ids:
            self.db.add(
                SeatClaim(
                    slot_id=slot_id,
                    seat_id=seat_id,
                    hold_id=hold_id,
                    status="held",
                )
            )
        self.db.flush()

    def delete_claims(self, hold_id: str, seat_ids: list[int] | None = None) -> int:
        stmt = (
            delete(SeatClaim)
            .where(SeatClaim.hold_id == hold_id)
            .where(SeatClaim.status == "held")
        )
        if seat_ids is not None:
            stmt = stmt.where(SeatClaim.seat_id.in_(seat_ids))
        result = self.db.execute(stmt.execution_options(synchronize_session="evaluate"))
        return result.rowcount

    def mark_claims_sold(self, hold_id: str) -> int:
        stmt = (
            update(SeatClaim)
            .where(SeatClaim.hold_id == hold_id)
            .where(SeatClaim.status == "held")
            .values(status="sold")
            .execution_options(synchronize_session="evaluate")
        )
        return self.db.execute(stmt).rowcount

    def decrement_empty_seats(self, slot_id: int, seat_count: int) -> bool:
        """
        Guarded decrement. Returns False when the slot has fewer
        empty seats than requested.
        """
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id)
            .where(Slot.empty_seats >= seat_count)
            .values(empty_seats=Slot.empty_seats - seat_count)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def increment_empty_seats(self, slot_id: int, seat_count: int) -> None:
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id)
            .values(empty_seats=Slot.empty_seats + seat_count)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)
