from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from cinehold.infrastructure.db.models import Base, Product, Promotion, Seat, SeatType, Slot
from cinehold.infrastructure.db.session import SessionLocal, engine


SEAT_TYPES = [
    {"id": 1, "name": "Standard", "price_multiplier": Decimal("1.00")},
    {"id": 2, "name": "VIP", "price_multiplier": Decimal("1.50")},
    {"id": 3, "name": "Couple", "price_multiplier": Decimal("1.80")},
    {"id": 4, "name": "Deluxe", "price_multiplier": Decimal("2.00")},
]

# Row letter -> seat type id.
ROOM_LAYOUT = {
    "A": 1,
    "B": 1,
    "C": 1,
    "D": 2,
    "E": 2,
    "F": 3,
    "G": 4,
}
SEATS_PER_ROW = 10
ROOM_ID = 1


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    vn = timezone(timedelta(hours=7))
    target = datetime.now(vn) + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_seat_types(db) -> None:
    for item in SEAT_TYPES:
        seat_type = db.get(SeatType, item["id"])
        if seat_type:
            seat_type.name = item["name"]
            seat_type.price_multiplier = item["price_multiplier"]
            continue
        db.add(SeatType(**item))
    db.flush()


def seed_room(db) -> int:
    created = 0
    for row, seat_type_id in ROOM_LAYOUT.items():
        for number in range(1, SEATS_PER_ROW + 1):
            existing = db.execute(
                select(Seat)
                .where(Seat.room_id == ROOM_ID)
                .where(Seat.seat_row == row)
                .where(Seat.seat_number == number)
            ).scalar_one_or_none()
            if existing:
                existing.seat_type_id = seat_type_id
                continue
            db.add(
                Seat(
                    room_id=ROOM_ID,
                    seat_row=row,
                    seat_number=number,
                    seat_type_id=seat_type_id,
                    status="available",
                )
            )
            created += 1
    db.flush()
    return created


def seed_slots(db) -> None:
    capacity = len(ROOM_LAYOUT) * SEATS_PER_ROW
    slots = [
        {"id": 1, "movie_id": 1, "cinema_id": 1, "start_time": _dt(1, 19, 30), "base_price": 100000},
        {"id": 2, "movie_id": 1, "cinema_id": 1, "start_time": _dt(1, 22, 0), "base_price": 90000},
        {"id": 3, "movie_id": 2, "cinema_id": 1, "start_time": _dt(2, 20, 15), "base_price": 110000},
    ]
    for item in slots:
        if db.get(Slot, item["id"]):
            continue
        db.add(Slot(room_id=ROOM_ID, empty_seats=capacity, **item))


def seed_products(db) -> None:
    products = [
        {"id": 1, "name": "Combo Bắp + Nước", "price": 80000},
        {"id": 2, "name": "Combo Couple", "price": 120000},
        {"id": 3, "name": "Nước ngọt", "price": 35000},
    ]
    for item in products:
        product = db.get(Product, item["id"])
        if product:
            product.price = item["price"]
            continue
        db.add(Product(**item))


def seed_promotions(db) -> None:
    now = datetime.now(timezone.utc)
    promotions = [
        {
            "code": "WELCOME10",
            "name": "Giảm 10% cho khách mới",
            "discount_type": "percentage",
            "discount_value": Decimal("10"),
            "max_discount_amount": 50000,
            "min_order_amount": 100000,
        },
        {
            "code": "FLAT20K",
            "name": "Giảm 20.000đ",
            "discount_type": "fixed_amount",
            "discount_value": Decimal("20000"),
            "min_order_amount": 0,
        },
    ]
    for item in promotions:
        existing = db.execute(
            select(Promotion).where(Promotion.code == item["code"])
        ).scalar_one_or_none()
        if existing:
            continue
        db.add(
            Promotion(
                start_date=now - timedelta(days=1),
                end_date=now + timedelta(days=30),
                status="active",
                **item,
            )
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_seat_types(db)
        created = seed_room(db)
        seed_slots(db)
        seed_products(db)
        seed_promotions(db)
        db.commit()
        print(f"Seed complete: {created} seats, 3 slots, 3 products, 2 promotions.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
