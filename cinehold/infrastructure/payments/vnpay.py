# cinehold/infrastructure/payments/vnpay.py
"""
VNPay redirect protocol.

Outbound: the request parameters are filtered (no empty values), sorted by
key, serialised as ``application/x-www-form-urlencoded`` and signed with
HMAC-SHA512 over that exact string. The signature is appended as
``vnp_SecureHash``.

Inbound: the callback query is stripped of its signature fields and put
through the very same canonicalisation before the HMAC is recomputed and
compared in constant time. Encoding must be identical on both sides; the
gateway serialises with the WHATWG form encoder, which leaves only
``A-Z a-z 0-9 * - . _`` unescaped and writes spaces as ``+``.
"""

import hashlib
import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import quote_plus

from cinehold.domain.exceptions import PaymentConfigurationError, SignatureInvalid


logger = logging.getLogger(__name__)

PROVIDER = "VNPAY"
VERSION = "2.1.0"
COMMAND_PAY = "pay"
CURRENCY = "VND"
DEFAULT_LOCALE = "vn"
DEFAULT_ORDER_TYPE = "other"
SUCCESS_CODE = "00"
SIGNATURE_FIELD = "vnp_SecureHash"
SIGNATURE_FIELDS = (SIGNATURE_FIELD, "vnp_SecureHashType")

# Timestamps are read by the gateway as Vietnam local time.
GATEWAY_TZ = timezone(timedelta(hours=7))
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

RESPONSE_MESSAGES = {
    "00": "Giao dịch thành công",
    "01": "Giao dịch chưa hoàn tất",
    "02": "Giao dịch bị lỗi",
    "04": "Giao dịch đảo (Khách hàng đã bị trừ tiền tại Ngân hàng nhưng GD chưa thành công ở VNPAY)",
    "05": "VNPAY đang xử lý giao dịch này (GD hoàn tiền)",
    "06": "VNPAY đã gửi yêu cầu hoàn tiền sang Ngân hàng",
    "07": "Giao dịch bị nghi ngờ gian lận",
    "09": "Giao dịch bị từ chối",
    "10": "Giao dịch đã hủy",
    "11": "Thất bại do không xác thực được thông tin khách hàng",
    "12": "Thất bại do không xác thực được thông tin merchant",
    "13": "Giao dịch đã hết hạn",
    "24": "Khách hàng hủy giao dịch",
    "51": "Tài khoản không đủ số dư",
    "65": "Tài khoản bị giới hạn số lần giao dịch",
}
UNKNOWN_RESPONSE_MESSAGE = "Mã phản hồi không hợp lệ"


def response_message(code: str | None) -> str:
    return RESPONSE_MESSAGES.get(code or "", UNKNOWN_RESPONSE_MESSAGE)


def form_encode(value) -> str:
    # quote_plus keeps "~" and drops "*"; the gateway does the opposite.
    return quote_plus(str(value), safe="*").replace("~", "%7E")


def canonicalize(params: Mapping[str, object]) -> str:
    present = [
        (key, value)
        for key, value in params.items()
        if value is not None and value != ""
    ]
    present.sort(key=lambda item: item[0].encode("utf-8"))
    return "&".join(f"{form_encode(key)}={form_encode(value)}" for key, value in present)


def sign(canonical: str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical.encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(GATEWAY_TZ).strftime(TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class SignedPaymentRequest:
    params: dict
    canonical: str
    signature: str
    url: str


@dataclass(frozen=True)
class VerifiedCallback:
    order_id: str | None
    response_code: str | None
    amount_minor: int | None
    transaction_no: str | None
    transaction_status: str | None
    bank_code: str | None
    card_type: str | None
    pay_date: str | None

    @property
    def is_success(self) -> bool:
        return self.response_code == SUCCESS_CODE

    @property
    def message(self) -> str:
        return response_message(self.response_code)


class VNPayGateway:
    """Builds signed redirect URLs and verifies signed return callbacks."""

    provider = PROVIDER

    def __init__(
        self,
        tmn_code: str,
        hash_secret: str,
        payment_url: str,
        return_url: str,
    ):
        if not tmn_code or not hash_secret:
            raise PaymentConfigurationError(
                "VNPay credentials not configured. Set VNPAY_TMN_CODE and VNPAY_HASH_SECRET."
            )
        self.tmn_code = tmn_code
        self._hash_secret = hash_secret
        self.payment_url = payment_url
        self.return_url = return_url

    @classmethod
    def from_settings(cls, settings) -> "VNPayGateway":
        return cls(
            tmn_code=settings.vnpay_tmn_code,
            hash_secret=settings.vnpay_hash_secret,
            payment_url=settings.vnpay_url,
            return_url=settings.vnpay_return_url,
        )

    def build_payment_request(
        self,
        order_id: str,
        amount: int,
        ip_addr: str | None,
        created_at: datetime,
        order_info: str | None = None,
        order_type: str | None = None,
        locale: str | None = None,
        bank_code: str | None = None,
    ) -> SignedPaymentRequest:
        """
        ``amount`` is in whole currency units; the gateway expects
        hundredths, so it is multiplied by 100 on the wire.
        """
        if amount <= 0:
            raise ValueError("Amount must be greater than 0")

        client_ip = ip_addr or "127.0.0.1"
        if client_ip == "::1":
            client_ip = "127.0.0.1"

        params = {
            "vnp_Version": VERSION,
            "vnp_Command": COMMAND_PAY,
            "vnp_TmnCode": self.tmn_code,
            "vnp_Locale": locale or DEFAULT_LOCALE,
            "vnp_CurrCode": CURRENCY,
            "vnp_TxnRef": order_id,
            "vnp_OrderInfo": order_info or f"Thanh toan don hang {order_id}",
            "vnp_OrderType": order_type or DEFAULT_ORDER_TYPE,
            "vnp_Amount": str(amount * 100),
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": client_ip,
            "vnp_CreateDate": format_timestamp(created_at),
            "vnp_BankCode": bank_code,
        }
        params = {key: value for key, value in params.items() if value not in (None, "")}

        canonical = canonicalize(params)
        signature = sign(canonical, self._hash_secret)
        url = f"{self.payment_url}?{canonical}&{SIGNATURE_FIELD}={signature}"

        logger.info("Built payment request order_id=%s amount=%s", order_id, amount)
        return SignedPaymentRequest(
            params=params,
            canonical=canonical,
            signature=signature,
            url=url,
        )

    def verify_callback(self, query: Mapping[str, str]) -> VerifiedCallback:
        received = query.get(SIGNATURE_FIELD)
        order_id = query.get("vnp_TxnRef")
        if not received:
            logger.warning("Callback without signature order_id=%s", order_id)
            raise SignatureInvalid("Missing signature")

        unsigned = {
            key: value
            for key, value in query.items()
            if key not in SIGNATURE_FIELDS
        }
        expected = sign(canonicalize(unsigned), self._hash_secret)

        if not hmac.compare_digest(expected.lower(), received.lower()):
            logger.warning("Callback signature mismatch order_id=%s", order_id)
            raise SignatureInvalid("Signature mismatch")

        raw_amount = query.get("vnp_Amount")
        try:
            amount_minor = int(raw_amount) if raw_amount else None
        except ValueError:
            amount_minor = None

        return VerifiedCallback(
            order_id=order_id,
            response_code=query.get("vnp_ResponseCode"),
            amount_minor=amount_minor,
            transaction_no=query.get("vnp_TransactionNo"),
            transaction_status=query.get("vnp_TransactionStatus"),
            bank_code=query.get("vnp_BankCode"),
            card_type=query.get("vnp_CardType"),
            pay_date=query.get("vnp_PayDate"),
        )
