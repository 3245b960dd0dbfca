import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cinehold.api.routes import routes
from cinehold.application.checkout_service import CheckoutService
from cinehold.application.hold_service import ReservationHoldService
from cinehold.application.settlement_service import SettlementService
from cinehold.infrastructure.config import VNPAY_SANDBOX_URL, Settings
from cinehold.infrastructure.db.models import Base, Product, Promotion, Seat, SeatType, Slot
from cinehold.infrastructure.db.session import build_engine
from cinehold.infrastructure.payments.vnpay import VNPayGateway, canonicalize, sign
from cinehold.main import app


# Monday, 10:30 in Hanoi.
FIXED_NOW = datetime(2026, 10, 19, 3, 30, tzinfo=timezone.utc)

TMN_CODE = "DEMO0001"
HASH_SECRET = "secret"

SLOT_ID = 1
TIGHT_SLOT_ID = 2
BASE_PRICE = 100000

# Room 1 layout: A1-A3 standard, B1-B2 VIP, C1 broken.
A1, A2, A3, B1, B2, C1 = 1, 2, 3, 4, 5, 6

POPCORN = 1
SODA = 2


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def empty_seats(db, slot_id: int) -> int:
    return db.execute(select(Slot.empty_seats).where(Slot.id == slot_id)).scalar_one()


def seed_catalog(db) -> None:
    db.add_all(
        [
            SeatType(id=1, name="Standard", price_multiplier=Decimal("1.00")),
            SeatType(id=2, name="VIP", price_multiplier=Decimal("1.50")),
        ]
    )
    db.flush()
    db.add_all(
        [
            Seat(id=A1, room_id=1, seat_row="A", seat_number=1, seat_type_id=1),
            Seat(id=A2, room_id=1, seat_row="A", seat_number=2, seat_type_id=1),
            Seat(id=A3, room_id=1, seat_row="A", seat_number=3, seat_type_id=1),
            Seat(id=B1, room_id=1, seat_row="B", seat_number=1, seat_type_id=2),
            Seat(id=B2, room_id=1, seat_row="B", seat_number=2, seat_type_id=2),
            Seat(id=C1, room_id=1, seat_row="C", seat_number=1, seat_type_id=1, status="broken"),
        ]
    )
    db.add_all(
        [
            Slot(
                id=SLOT_ID,
                movie_id=7,
                cinema_id=3,
                room_id=1,
                start_time=FIXED_NOW + timedelta(days=1),
                base_price=BASE_PRICE,
                empty_seats=5,
            ),
            Slot(
                id=TIGHT_SLOT_ID,
                movie_id=7,
                cinema_id=3,
                room_id=1,
                start_time=FIXED_NOW + timedelta(days=1, hours=3),
                base_price=BASE_PRICE,
                empty_seats=1,
            ),
        ]
    )
    db.add_all(
        [
            Product(id=POPCORN, name="Combo Bắp + Nước", price=80000),
            Product(id=SODA, name="Nước ngọt", price=35000),
        ]
    )

    window = {
        "start_date": FIXED_NOW - timedelta(days=10),
        "end_date": FIXED_NOW + timedelta(days=10),
    }
    db.add_all(
        [
            Promotion(
                code="CAP20K",
                name="10% off, capped",
                discount_type="percentage",
                discount_value=Decimal("10"),
                max_discount_amount=20000,
                min_order_amount=0,
                **window,
            ),
            Promotion(
                code="FLAT50K",
                name="50k off",
                discount_type="fixed_amount",
                discount_value=Decimal("50000"),
                min_order_amount=200000,
                **window,
            ),
            Promotion(
                code="WEEKEND",
                name="Weekend only",
                discount_type="percentage",
                discount_value=Decimal("20"),
                applicable_days="6,7",
                **window,
            ),
            Promotion(
                code="GONE",
                name="Ended last month",
                discount_type="fixed_amount",
                discount_value=Decimal("10000"),
                start_date=FIXED_NOW - timedelta(days=60),
                end_date=FIXED_NOW - timedelta(days=30),
            ),
        ]
    )
    db.commit()


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    seed_catalog(session)
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def settings():
    settings = Settings()
    settings.hold_ttl_seconds = 300
    settings.max_seats_per_hold = 10
    settings.vnpay_tmn_code = TMN_CODE
    settings.vnpay_hash_secret = HASH_SECRET
    settings.vnpay_url = VNPAY_SANDBOX_URL
    settings.vnpay_return_url = "http://localhost:8000/api/payment/vnpay/return"
    settings.public_url = "http://localhost:3000"
    return settings


@pytest.fixture
def gateway(settings):
    return VNPayGateway.from_settings(settings)


@pytest.fixture
def hold_service(db, settings, clock):
    return ReservationHoldService(db, settings=settings, clock=clock)


@pytest.fixture
def checkout_service(db, settings, gateway, clock):
    return CheckoutService(db, settings=settings, gateway_factory=lambda: gateway, clock=clock)


@pytest.fixture
def settlement_service(db, settings, gateway, clock):
    return SettlementService(db, gateway, settings=settings, clock=clock)


@pytest.fixture
def client(db, session_factory, settings, gateway, clock):
    def _get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[routes.get_db] = _get_db
    app.dependency_overrides[routes.get_app_settings] = lambda: settings
    app.dependency_overrides[routes.get_gateway_factory] = lambda: (lambda: gateway)
    app.dependency_overrides[routes.get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


def signed_callback(gateway: VNPayGateway, order_id: str, amount: int, response_code: str = "00", **extra) -> dict:
    """Builds the query string the gateway would send back for ``order_id``."""
    params = {
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_CardType": "ATM",
        "vnp_OrderInfo": f"Thanh toan don hang {order_id}",
        "vnp_PayDate": "20261019103500",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": gateway.tmn_code,
        "vnp_TransactionNo": "14123456",
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": order_id,
    }
    params.update(extra)
    params["vnp_SecureHash"] = sign(canonicalize(params), HASH_SECRET)
    return params
