import random
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import stripe
import structlog

from payflow import config

logger = structlog.get_logger(__name__)


@dataclass
class GatewayResult:
    approved: bool
    transaction_id: Optional[str] = None
    message: str = ""


def generate_transaction_id():
    return f"txn_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SimulatedGateway:
    """Stand-in for a card processor: random latency, random declines."""

    def __init__(self, decline_rate=None, min_latency_ms=None, max_latency_ms=None, rng=None, sleep=time.sleep):
        self.decline_rate = config.GATEWAY_DECLINE_RATE if decline_rate is None else decline_rate
        self.min_latency_ms = config.GATEWAY_MIN_LATENCY_MS if min_latency_ms is None else min_latency_ms
        self.max_latency_ms = config.GATEWAY_MAX_LATENCY_MS if max_latency_ms is None else max_latency_ms
        self.rng = rng or random.Random()
        self.sleep = sleep

    def charge(self, payment_id, amount, method, transaction_id=None):
        latency = self.rng.randint(self.min_latency_ms, max(self.min_latency_ms, self.max_latency_ms))
        if latency:
            self.sleep(latency / 1000)

        if self.rng.random() < self.decline_rate:
            return GatewayResult(approved=False, message="Payment declined by gateway")
        return GatewayResult(
            approved=True,
            transaction_id=transaction_id or generate_transaction_id(),
            message="Payment processed successfully",
        )


class StripeGateway:
    def __init__(self, api_key=None, currency="brl"):
        stripe.api_key = api_key or config.STRIPE_SECRET_KEY
        self.currency = currency

    def charge(self, payment_id, amount, method, transaction_id=None):
        try:
            intent = stripe.PaymentIntent.create(
                amount=int((Decimal(str(amount)) * 100).to_integral_value()),
                currency=self.currency,
                automatic_payment_methods={"enabled": True},
                metadata={"payment_id": payment_id, "method": method},
                idempotency_key=payment_id,
            )
        except stripe.error.CardError as e:
            logger.warning("stripe_card_declined", payment_id=payment_id, code=e.code)
            return GatewayResult(approved=False, message="Payment declined by gateway")

        if intent.status == "canceled":
            return GatewayResult(approved=False, message="Payment declined by gateway")
        return GatewayResult(
            approved=True,
            transaction_id=transaction_id or intent.id,
            message="Payment processed successfully",
        )


def build_gateway():
    if config.PAYMENT_GATEWAY == "stripe":
        return StripeGateway()
    return SimulatedGateway()
