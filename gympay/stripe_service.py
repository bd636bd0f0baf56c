import json
import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal

import stripe

from gympay import config
from gympay.errors import InvalidInput, InvalidSignature

logger = logging.getLogger(__name__)

stripe.api_key = config.STRIPE_SECRET_KEY
# Bounded network calls; the client retries with exponential backoff and
# reuses idempotency keys across retries.
stripe.max_network_retries = config.STRIPE_MAX_NETWORK_RETRIES
stripe.default_http_client = stripe.RequestsClient(timeout=config.STRIPE_TIMEOUT_SECONDS)


def to_minor_units(amount) -> int:
    """Dollars -> cents, rounding half up (95.005 -> 9501)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(Decimal("0.01"))


def find_or_create_customer(email: str, name: str = None, metadata: dict = None):
    existing = stripe.Customer.list(email=email, limit=1)
    if existing.data:
        return existing.data[0]
    return stripe.Customer.create(
        email=email,
        name=name,
        metadata=metadata or {},
    )


def create_payment(amount, currency: str, customer_id: str, metadata: dict, description: str = None):
    return stripe.PaymentIntent.create(
        amount=to_minor_units(amount),
        currency=currency,
        customer=customer_id,
        description=description,
        metadata=metadata,
        automatic_payment_methods={"enabled": True},
        idempotency_key=f"pi-{metadata.get('enrollmentId')}-{uuid.uuid4().hex}",
    )


def _plain(obj) -> dict:
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return obj


def retrieve_payment(payment_intent_id: str) -> dict:
    return _plain(stripe.PaymentIntent.retrieve(payment_intent_id, expand=["latest_charge"]))


def construct_event(payload: bytes, signature: str, secret: str) -> dict:
    """Verify a webhook delivery and return the event as a plain dict.

    Raises InvalidSignature when the signature does not match, InvalidInput
    when the authenticated body is not a JSON event.
    """
    if not signature:
        raise InvalidSignature()

    body = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
    try:
        stripe.WebhookSignature.verify_header(
            body, signature, secret, tolerance=config.WEBHOOK_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature() from e

    try:
        event = json.loads(body)
    except ValueError:
        raise InvalidInput("Invalid payload")
    if not isinstance(event, dict) or "type" not in event or not isinstance(event.get("data"), dict):
        raise InvalidInput("Invalid payload")
    return event
