"""Client for the Lipia mobile-money gateway (M-Pesa STK Push).

The gateway answers a push request synchronously with a TransactionReference
and reports the outcome later by calling back
``/api/payments/callback/order/{orderId}``.
"""

import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import httpx

from checkout.core_settings import get_settings
from checkout.domain.errors import GatewayError, InvalidPhoneFormat
from shared.core import get_logger

logger = get_logger(__name__)

NORMALIZED_PHONE = re.compile(r"^254[17]\d{8}$")


def normalize_phone_number(phone_number: str) -> str:
    """Convert a Kenyan mobile number to ``254XXXXXXXXX``.

    Accepts ``0712345678``, ``0112345678``, ``712345678``, ``254712345678``
    and ``+254712345678``; spaces and dashes are ignored.
    """
    normalized = re.sub(r"[\s-]", "", phone_number or "")
    if normalized.startswith("+254"):
        normalized = normalized[4:]
    elif normalized.startswith("254"):
        normalized = normalized[3:]
    elif normalized.startswith("07") or normalized.startswith("01"):
        normalized = normalized[1:]

    normalized = f"254{normalized}"
    if not NORMALIZED_PHONE.match(normalized):
        raise InvalidPhoneFormat()
    return normalized


def generate_callback_url(endpoint: str, base_url: Optional[str] = None) -> str:
    base = (base_url or get_settings().APP_URL).rstrip("/")
    return f"{base}/api/payments/callback/{endpoint}"


def generate_external_reference(prefix: str, identifier: Any) -> str:
    return f"{prefix}_{identifier}_{int(time.time() * 1000)}"


def format_payment_amount(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def create_payment_metadata(**data: Any) -> Dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "poultry-marketplace",
        **data,
    }


@dataclass
class StkPushResult:
    transaction_reference: str
    response_code: Optional[int]
    response_description: Optional[str]
    customer_message: str
    raw: Dict[str, Any]


class LipiaClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def initiate_stk_push(
        self,
        phone_number: str,
        amount: Decimal,
        external_reference: Optional[str] = None,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StkPushResult:
        if not self.configured:
            raise GatewayError(
                "Lipia API key is not configured",
                code="GATEWAY_NOT_CONFIGURED",
                customer_message="Mobile payments are currently unavailable. Please try again later.",
                status_code=503,
            )

        phone = normalize_phone_number(phone_number)
        amount = format_payment_amount(amount)
        if amount < 1:
            raise GatewayError(
                "Amount must be at least 1 KSH",
                code="INVALID_AMOUNT",
                customer_message="Amount must be at least 1 KSH",
                field="amount",
            )

        body: Dict[str, Any] = {
            "phone_number": phone,
            "amount": int(amount) if amount == amount.to_integral_value() else float(amount),
        }
        if external_reference:
            body["external_reference"] = external_reference
        if callback_url:
            body["callback_url"] = callback_url
        if metadata:
            body["metadata"] = metadata

        logger.info(
            "Initiating STK push",
            extra={'extra_fields': {'phone': phone, 'amount': str(amount), 'external_reference': external_reference}},
        )
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/payments/stk-push",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"STK push request failed: {e}")
            raise GatewayError(
                f"Failed to initiate STK Push: {e}",
                code="GATEWAY_UNREACHABLE",
                customer_message="Could not reach the payment provider. Please try again.",
                status_code=502,
            ) from e

        try:
            result = response.json()
        except ValueError:
            result = {}

        if not response.is_success:
            error = result.get("error") or {}
            logger.warning(
                "STK push rejected by gateway",
                extra={'extra_fields': {'status_code': response.status_code, 'code': error.get("code")}},
            )
            raise GatewayError(
                result.get("message") or f"Gateway returned HTTP {response.status_code}",
                code=error.get("code") or "GATEWAY_ERROR",
                customer_message=result.get("customerMessage") or "Payment request failed. Please try again.",
                field=error.get("field"),
                status_code=response.status_code,
            )

        data = result.get("data") or {}
        reference = data.get("TransactionReference")
        if not reference:
            raise GatewayError(
                "Gateway response is missing TransactionReference",
                code="INVALID_GATEWAY_RESPONSE",
                customer_message="Payment request failed. Please try again.",
                status_code=502,
            )
        return StkPushResult(
            transaction_reference=reference,
            response_code=data.get("ResponseCode"),
            response_description=data.get("ResponseDescription"),
            customer_message=result.get("customerMessage") or "STK push sent. Check your phone to complete payment.",
            raw=result,
        )


def get_lipia_client() -> LipiaClient:
    settings = get_settings()
    return LipiaClient(settings.LIPIA_BASE_URL, settings.LIPIA_API_KEY, settings.LIPIA_TIMEOUT_SECONDS)
