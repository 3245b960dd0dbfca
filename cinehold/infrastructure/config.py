# cinehold/infrastructure/config.py

import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


VNPAY_SANDBOX_URL = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
VNPAY_PRODUCTION_URL = "https://vnpayment.vn/paymentv2/vpcpay.html"


class Settings:
    """Process configuration read once from the environment."""

    def __init__(self) -> None:
        self.app_env = os.getenv("APP_ENV", "development")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        # Empty means probe for a local Postgres, see db/session.py
        self.database_url = os.getenv("DATABASE_URL", "")
        self.db_connect_max_retries = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
        self.db_connect_retry_delay = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))

        self.hold_ttl_seconds = int(os.getenv("HOLD_TTL_SECONDS", "300"))
        self.max_seats_per_hold = int(os.getenv("MAX_SEATS_PER_HOLD", "10"))

        default_gateway_url = (
            VNPAY_PRODUCTION_URL if self.app_env == "production" else VNPAY_SANDBOX_URL
        )
        self.vnpay_tmn_code = os.getenv("VNPAY_TMN_CODE", "")
        self.vnpay_hash_secret = os.getenv("VNPAY_HASH_SECRET", "")
        self.vnpay_url = os.getenv("VNPAY_URL", default_gateway_url)
        self.vnpay_return_url = os.getenv(
            "VNPAY_RETURN_URL",
            "http://localhost:8000/api/payment/vnpay/return",
        )
        self.public_url = os.getenv("PUBLIC_URL", "http://localhost:3000").rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()
