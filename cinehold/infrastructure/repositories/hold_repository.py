# cinehold/infrastructure/repositories/hold_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import exists, select, update

from cinehold.infrastructure.db.models import CheckoutSession, ReservationHold
from cinehold.domain.state_machine import CheckoutStatus, HoldStatus


class HoldRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, hold_id: str) -> ReservationHold | None:
        stmt = select(ReservationHold).where(ReservationHold.id == hold_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_hold(
        self,
        slot_id: int,
        session_id: str,
        seat_count: int,
        created_at: datetime,
        expires_at: datetime,
    ) -> ReservationHold:
        hold = ReservationHold(
            slot_id=slot_id,
            session_id=session_id,
            seat_count=seat_count,
            status=HoldStatus.ACTIVE,
            created_at=created_at,
            expires_at=expires_at,
        )
        self.db.add(hold)
        self.db.flush()
        return hold

    def compare_and_set_status(
        self,
        hold_id: str,
        expected: HoldStatus,
        new_status: HoldStatus,
    ) -> bool:
        """
        Single authoritative transition. Exactly one concurrent caller
        sees True for a given (hold, expected) pair.
        """
        stmt = (
            update(ReservationHold)
            .where(ReservationHold.id == hold_id)
            .where(ReservationHold.status == expected)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        won = self.db.execute(stmt).rowcount == 1
        if won:
            hold = self.db.get(ReservationHold, hold_id)
            if hold is not None:
                self.db.refresh(hold)
        return won

    def adjust_seat_count(self, hold_id: str, delta: int) -> None:
        stmt = (
            update(ReservationHold)
            .where(ReservationHold.id == hold_id)
            .values(seat_count=ReservationHold.seat_count + delta)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def list_expired_orphans(
        self,
        now: datetime,
        slot_id: int | None = None,
        limit: int = 500,
    ) -> list[ReservationHold]:
        """
        Overdue active holds with no live checkout session. Holds owned by a
        SELECTING or AWAITING_PAYMENT session are released only when that
        session expires.
        """
        live_session = exists().where(
            CheckoutSession.hold_id == ReservationHold.id,
            CheckoutSession.status.in_(
                [CheckoutStatus.SELECTING, CheckoutStatus.AWAITING_PAYMENT]
            ),
        )
        stmt = (
            select(ReservationHold)
            .where(ReservationHold.status == HoldStatus.ACTIVE)
            .where(ReservationHold.expires_at <= now)
            .where(~live_session)
        )
        if slot_id is not None:
            stmt = stmt.where(ReservationHold.slot_id == slot_id)
        stmt = stmt.order_by(ReservationHold.expires_at).limit(limit)
        return list(self.db.execute(stmt).scalars().all())
