# cinehold/domain/promotions.py

from datetime import datetime
from decimal import Decimal

from cinehold.domain.clock import as_utc
from cinehold.domain.exceptions import PromotionRejected
from cinehold.domain.pricing import DiscountType, PromotionTerms


UNKNOWN_CODE = "unknown promotion code"
NOT_ACTIVE = "promotion is not active"
NOT_STARTED = "promotion has not started"
EXPIRED = "promotion has expired"
WRONG_DAY = "promotion is not valid on this day"
WRONG_MOVIE = "promotion does not apply to this movie"
WRONG_CINEMA = "promotion does not apply to this cinema"
USAGE_EXHAUSTED = "promotion usage limit reached"


def _id_set(raw: str | None) -> set[int]:
    if not raw:
        return set()
    return {int(part) for part in raw.split(",") if part.strip()}


def effective_status(promotion, now: datetime) -> str:
    """
    Status as seen by readers. ``expired`` is derived from end_date
    instead of being written back on every read.
    """
    if promotion.status == "active" and as_utc(promotion.end_date) < as_utc(now):
        return "expired"
    return promotion.status


def check_eligibility(
    promotion,
    now: datetime,
    movie_id: int | None = None,
    cinema_id: int | None = None,
) -> PromotionTerms:
    """
    Returns the pricing terms of ``promotion`` or raises PromotionRejected.

    The minimum order amount is left to the price engine since it depends
    on the computed total.
    """
    if promotion is None or promotion.is_deleted:
        raise PromotionRejected(UNKNOWN_CODE)

    status = effective_status(promotion, now)
    if status == "expired":
        raise PromotionRejected(EXPIRED)
    if status != "active":
        raise PromotionRejected(NOT_ACTIVE)

    now_utc = as_utc(now)
    if now_utc < as_utc(promotion.start_date):
        raise PromotionRejected(NOT_STARTED)

    days = _id_set(promotion.applicable_days)
    if days and now_utc.isoweekday() not in days:
        raise PromotionRejected(WRONG_DAY)

    movies = _id_set(promotion.applicable_movies)
    if movies and movie_id not in movies:
        raise PromotionRejected(WRONG_MOVIE)

    cinemas = _id_set(promotion.applicable_cinemas)
    if cinemas and cinema_id not in cinemas:
        raise PromotionRejected(WRONG_CINEMA)

    if promotion.usage_limit is not None and promotion.usage_count >= promotion.usage_limit:
        raise PromotionRejected(USAGE_EXHAUSTED)

    return PromotionTerms(
        code=promotion.code,
        discount_type=DiscountType(promotion.discount_type),
        value=Decimal(str(promotion.discount_value)),
        max_discount_amount=promotion.max_discount_amount,
        min_order_amount=promotion.min_order_amount or 0,
    )
