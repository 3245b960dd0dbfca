"""Expire overdue checkout sessions and orphan holds. Meant to run from cron."""

import logging

from cinehold.application.checkout_service import CheckoutService
from cinehold.infrastructure.config import get_settings
from cinehold.infrastructure.db.session import get_db_session


logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    with get_db_session() as db:
        result = CheckoutService(db, settings=settings).sweep_expired()
    logger.info(
        "Sweep complete sessions_expired=%s holds_released=%s",
        result["sessions_expired"],
        result["holds_released"],
    )


if __name__ == "__main__":
    main()
