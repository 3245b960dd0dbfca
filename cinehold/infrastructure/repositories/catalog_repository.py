# cinehold/infrastructure/repositories/catalog_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import func, select

from cinehold.infrastructure.db.models import Product, Promotion, Seat, SeatType, Slot


class CatalogRepository:
    """
    Read side of the external catalog services.
    Soft-deleted rows never leave this class.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_slot(self, slot_id: int) -> Slot | None:
        stmt = select(Slot).where(Slot.id == slot_id).where(Slot.is_deleted.is_(False))
        return self.db.execute(stmt).scalar_one_or_none()

    def list_room_seats(self, room_id: int) -> list[tuple[Seat, SeatType]]:
        stmt = (
            select(Seat, SeatType)
            .join(SeatType, SeatType.id == Seat.seat_type_id)
            .where(Seat.room_id == room_id)
            .where(Seat.is_deleted.is_(False))
            .order_by(Seat.seat_row, Seat.seat_number)
        )
        return [(seat, seat_type) for seat, seat_type in self.db.execute(stmt).all()]

    def get_seats(self, room_id: int, seat_ids: list[int]) -> list[tuple[Seat, SeatType]]:
        if not seat_ids:
            return []
        stmt = (
            select(Seat, SeatType)
            .join(SeatType, SeatType.id == Seat.seat_type_id)
            .where(Seat.room_id == room_id)
            .where(Seat.id.in_(seat_ids))
            .where(Seat.is_deleted.is_(False))
            .order_by(Seat.id)
        )
        return [(seat, seat_type) for seat, seat_type in self.db.execute(stmt).all()]

    def get_products(self, product_ids: list[int]) -> dict[int, Product]:
        if not product_ids:
            return {}
        stmt = (
            select(Product)
            .where(Product.id.in_(product_ids))
            .where(Product.is_deleted.is_(False))
        )
        return {product.id: product for product in self.db.execute(stmt).scalars().all()}

    def get_promotion_by_code(self, code: str) -> Promotion | None:
        stmt = (
            select(Promotion)
            .where(func.upper(Promotion.code) == code.strip().upper())
            .where(Promotion.is_deleted.is_(False))
        )
        return self.db.execute(stmt).scalars().first()
