from typing import Optional

from pydantic import BaseModel, Field


class CheckoutCreateRequest(BaseModel):
    slot_id: int
    seat_ids: list[int] = Field(min_length=1)


class SeatSelectionRequest(BaseModel):
    seat_ids: list[int] = Field(min_length=1)


class ComboSelectionRequest(BaseModel):
    # product_id -> quantity; a quantity <= 0 removes the product.
    items: dict[int, int]


class PromotionRequest(BaseModel):
    code: Optional[str] = None


class PaymentStartRequest(BaseModel):
    bank_code: Optional[str] = None
    locale: Optional[str] = None


class ComboLineResponse(BaseModel):
    product_id: int
    name: str
    unit_price: int
    quantity: int
    line_total: int


class QuoteResponse(BaseModel):
    seat_subtotal: int
    combo_subtotal: int
    pre_discount_total: int
    discount: int
    grand_total: int
    promotion_code: Optional[str] = None
    promotion_rejected: Optional[str] = None


class CheckoutResponse(BaseModel):
    token: str
    slot_id: int
    hold_id: str
    status: str
    seat_ids: list[int]
    combos: list[ComboLineResponse]
    promotion_code: Optional[str] = None
    quote: QuoteResponse
    expires_at: str


class PaymentStartResponse(BaseModel):
    token: str
    order_id: str
    amount: int
    currency: str
    payment_url: str
    status: str


class SeatMapEntry(BaseModel):
    id: int
    row: str
    number: int
    type_id: int
    type_name: str
    price_multiplier: float
    status: str


class SweepResponse(BaseModel):
    sessions_expired: int
    holds_released: int


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str
