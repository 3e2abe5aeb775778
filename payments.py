import logging
import os
import re
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_API_URL = os.getenv("STRIPE_API_URL", "https://api.stripe.com/v1")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
PROCESSOR_TIMEOUT = 10  # seconds
UUID_PATTERN = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-8][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}"
)


class PaymentError(Exception):
    """The payment processor rejected the request or could not be reached."""


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def is_valid_correlation_id(value: str) -> bool:
    """True only for the canonical hyphenated RFC 4122 form."""
    return isinstance(value, str) and UUID_PATTERN.fullmatch(value) is not None


def to_minor_units(price) -> int:
    return int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProcessor:
    """Creates charge intents through the processor's REST API."""

    def __init__(self, secret_key: Optional[str] = STRIPE_SECRET_KEY, api_url: str = STRIPE_API_URL):
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")

    def create_charge_intent(self, amount: int, currency: str = PAYMENT_CURRENCY, methods: Optional[List[str]] = None) -> dict:
        if not self.secret_key:
            raise PaymentError("Payment processor not configured")
        data = {"amount": amount, "currency": currency}
        for i, method in enumerate(methods or ["card"]):
            data[f"payment_method_types[{i}]"] = method
        try:
            resp = requests.post(
                f"{self.api_url}/payment_intents",
                data=data,
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=PROCESSOR_TIMEOUT,
            )
        except requests.RequestException as e:
            logger.exception("Payment processor unreachable")
            raise PaymentError("Payment processor unreachable") from e
        if resp.status_code != 200:
            logger.error("Payment processor returned %s", resp.status_code)
            raise PaymentError(f"Payment processor returned {resp.status_code}")
        return {"clientSecret": resp.json().get("client_secret")}


_processor: Optional[PaymentProcessor] = None


def get_payment_processor() -> PaymentProcessor:
    global _processor
    if _processor is None:
        _processor = PaymentProcessor()
    return _processor
