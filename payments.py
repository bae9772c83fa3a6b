"""
Payment gateway adapter.

Order workflows only see the `PaymentGateway` contract; `StripeGateway`
talks to a Stripe-compatible REST API over httpx.
"""
import hashlib
import hmac
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Optional

import httpx
from pydantic import BaseModel

from errors import PaymentFailedError, PaymentTimeoutError, ValidationError
from schemas import PaymentMethod

LOG = logging.getLogger("payments")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "inr")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10"))

WEBHOOK_TOLERANCE_SECONDS = 300


class PaymentIntent(BaseModel):
    client_secret: str
    intent_id: str


class PaymentConfirmation(BaseModel):
    succeeded: bool
    status: str
    captured_amount: Decimal = Decimal("0")

    @property
    def in_progress(self) -> bool:
        return self.status == "processing"


class PaymentGateway(ABC):
    @abstractmethod
    def create_payment_intent(self, amount: Decimal, metadata: Optional[dict] = None) -> PaymentIntent:
        ...

    @abstractmethod
    def confirm_payment(self, intent_id: str) -> PaymentConfirmation:
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify and decode a webhook notification."""


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class StripeGateway(PaymentGateway):
    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None, currency: str = PAYMENT_CURRENCY,
                 base_url: str = STRIPE_API_BASE, timeout: float = PAYMENT_TIMEOUT_SECONDS,
                 client: Optional[httpx.Client] = None):
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {secret_key}"},
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException:
            LOG.warning("Payment gateway timed out on %s %s", method, path)
            raise PaymentTimeoutError()
        except httpx.HTTPStatusError as e:
            LOG.warning("Payment gateway returned HTTP %s on %s %s", e.response.status_code, method, path)
            try:
                message = e.response.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                message = f"Payment gateway error: {e.response.status_code}"
            raise PaymentFailedError(message)
        return response.json()

    def create_payment_intent(self, amount: Decimal, metadata: Optional[dict] = None) -> PaymentIntent:
        data = {"amount": to_minor_units(amount), "currency": self.currency}
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)
        body = self._request("POST", "/v1/payment_intents", data=data)
        return PaymentIntent(client_secret=body["client_secret"], intent_id=body["id"])

    def confirm_payment(self, intent_id: str) -> PaymentConfirmation:
        body = self._request("GET", f"/v1/payment_intents/{intent_id}")
        status = body.get("status", "unknown")
        return PaymentConfirmation(
            succeeded=status == "succeeded",
            status=status,
            captured_amount=from_minor_units(body.get("amount_received") or 0),
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        if not self.webhook_secret:
            raise ValidationError("Webhook secret not configured")
        if not signature:
            raise ValidationError("Missing webhook signature")
        parts = dict(p.split("=", 1) for p in signature.split(",") if "=" in p)
        try:
            timestamp = int(parts["t"])
            expected = parts["v1"]
        except (KeyError, ValueError):
            raise ValidationError("Malformed webhook signature")
        if abs(time.time() - timestamp) > WEBHOOK_TOLERANCE_SECONDS:
            raise ValidationError("Webhook signature expired")
        signed = f"{timestamp}.".encode() + payload
        digest = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(digest, expected):
            raise ValidationError("Invalid webhook signature")
        try:
            return json.loads(payload)
        except ValueError:
            raise ValidationError("Invalid webhook payload")


@lru_cache(maxsize=None)
def _configured_gateways() -> Dict[PaymentMethod, PaymentGateway]:
    gateways = {}
    if STRIPE_SECRET_KEY:
        gateways[PaymentMethod.STRIPE] = StripeGateway(STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET)
    else:
        LOG.warning("STRIPE_SECRET_KEY not set; card payments are disabled")
    return gateways


def get_payment_gateways() -> Dict[PaymentMethod, PaymentGateway]:
    return _configured_gateways()
