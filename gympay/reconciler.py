"""
Webhook reconciliation.

Stripe is the authority on whether money moved. Deliveries can repeat and
arrive out of order, so every handler goes through the state machine:
repeats are no-ops and late, backward events are logged and dropped. An
unknown intent is not an error either (it may belong to another
environment). Only signature problems make the endpoint answer non-200.
"""
import enum
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from gympay.audit import AuditService
from gympay.errors import InvalidTransition
from gympay.lifecycle import transition
from gympay.models import PaymentRecord, PaymentStatus
from gympay.payments import find_by_intent
from gympay.stripe_service import from_minor_units

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    INTENT_SUCCEEDED = "payment_intent.succeeded"
    INTENT_FAILED = "payment_intent.payment_failed"
    INTENT_CANCELED = "payment_intent.canceled"
    INTENT_PROCESSING = "payment_intent.processing"
    DISPUTE_CREATED = "charge.dispute.created"
    CUSTOMER_CREATED = "customer.created"
    INVOICE_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, value: str) -> Optional["EventKind"]:
        try:
            return cls(value)
        except ValueError:
            return None


def _payment_for(db: Session, intent: dict) -> Optional[PaymentRecord]:
    payment = find_by_intent(db, intent.get("id"))
    if payment is None:
        logger.error("Payment not found for PaymentIntent: %s", intent.get("id"))
    return payment


def _apply(db: Session, payment: PaymentRecord, target: PaymentStatus, **fields):
    try:
        return transition(db, payment.id, target, **fields)
    except InvalidTransition as e:
        # A later event already moved the record on; nothing to retry.
        logger.warning("Ignoring out-of-order webhook for payment %s: %s", payment.id, e)
        return None


def _first_charge(intent: dict) -> Optional[dict]:
    charge = intent.get("latest_charge")
    if isinstance(charge, dict):
        return charge
    charges = (intent.get("charges") or {}).get("data") or []
    return charges[0] if charges else None


def handle_intent_succeeded(db: Session, intent: dict):
    payment = _payment_for(db, intent)
    if payment is None:
        return

    charge = _first_charge(intent)
    created = intent.get("created")
    fee = charge.get("application_fee_amount") if charge else None
    result = _apply(
        db, payment, PaymentStatus.COMPLETED,
        paid_date=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
        receipt_url=charge.get("receipt_url") if charge else None,
        payment_method_id=intent.get("payment_method"),
        processing_fee=from_minor_units(fee) if charge else None,
    )
    if result is None:
        # Money moved but the record is terminal; left for manual reconciliation.
        AuditService.record(
            db, "PAYMENT_WEBHOOK_REJECTED",
            details={
                "paymentId": payment.id,
                "stripePaymentIntentId": intent.get("id"),
                "eventType": EventKind.INTENT_SUCCEEDED.value,
                "recordStatus": payment.status,
            },
            success=False,
        )
        return

    AuditService.record(
        db, "PAYMENT_WEBHOOK_SUCCESS",
        details={
            "paymentId": payment.id,
            "stripePaymentIntentId": intent.get("id"),
            "amount": float(from_minor_units(intent.get("amount"))),
            "changed": result.changed,
        },
    )
    logger.info("Payment %s marked as completed via webhook", payment.id)


def handle_intent_failed(db: Session, intent: dict):
    payment = _payment_for(db, intent)
    if payment is None:
        return

    error = intent.get("last_payment_error")
    reason = f"{error.get('type')}: {error.get('message')}" if error else "Payment failed"
    if _apply(db, payment, PaymentStatus.FAILED, failure_reason=reason) is None:
        return

    AuditService.record(
        db, "PAYMENT_WEBHOOK_FAILED",
        details={"paymentId": payment.id, "stripePaymentIntentId": intent.get("id"), "failureReason": reason},
        success=False,
    )
    logger.info("Payment %s marked as failed via webhook: %s", payment.id, reason)


def handle_intent_canceled(db: Session, intent: dict):
    payment = _payment_for(db, intent)
    if payment is None:
        return

    if _apply(db, payment, PaymentStatus.CANCELLED, failure_reason="Payment canceled") is None:
        return

    AuditService.record(
        db, "PAYMENT_WEBHOOK_CANCELED",
        details={"paymentId": payment.id, "stripePaymentIntentId": intent.get("id")},
    )
    logger.info("Payment %s marked as canceled via webhook", payment.id)


def handle_intent_processing(db: Session, intent: dict):
    payment = _payment_for(db, intent)
    if payment is None:
        return
    if _apply(db, payment, PaymentStatus.PROCESSING) is not None:
        logger.info("Payment %s marked as processing via webhook", payment.id)


def handle_dispute_created(db: Session, dispute: dict):
    # Disputes reference a charge id, which payments do not store yet.
    AuditService.record(
        db, "PAYMENT_DISPUTE_CREATED",
        details={
            "disputeId": dispute.get("id"),
            "chargeId": dispute.get("charge"),
            "amount": float(from_minor_units(dispute.get("amount"))),
            "reason": dispute.get("reason"),
            "status": dispute.get("status"),
        },
        success=False,
    )
    logger.warning("Dispute created for charge %s: %s", dispute.get("charge"), dispute.get("reason"))


def handle_customer_created(db: Session, customer: dict):
    AuditService.record(
        db, "STRIPE_CUSTOMER_CREATED",
        details={"customerId": customer.get("id"), "email": customer.get("email")},
    )


def handle_invoice_succeeded(db: Session, invoice: dict):
    AuditService.record(
        db, "INVOICE_PAYMENT_SUCCEEDED",
        details={
            "invoiceId": invoice.get("id"),
            "customerId": invoice.get("customer"),
            "amount": float(from_minor_units(invoice.get("amount_paid"))),
            "subscriptionId": invoice.get("subscription"),
        },
    )


def handle_invoice_failed(db: Session, invoice: dict):
    AuditService.record(
        db, "INVOICE_PAYMENT_FAILED",
        details={
            "invoiceId": invoice.get("id"),
            "customerId": invoice.get("customer"),
            "amount": float(from_minor_units(invoice.get("amount_due"))),
            "subscriptionId": invoice.get("subscription"),
        },
        success=False,
    )


HANDLERS = {
    EventKind.INTENT_SUCCEEDED: handle_intent_succeeded,
    EventKind.INTENT_FAILED: handle_intent_failed,
    EventKind.INTENT_CANCELED: handle_intent_canceled,
    EventKind.INTENT_PROCESSING: handle_intent_processing,
    EventKind.DISPUTE_CREATED: handle_dispute_created,
    EventKind.CUSTOMER_CREATED: handle_customer_created,
    EventKind.INVOICE_SUCCEEDED: handle_invoice_succeeded,
    EventKind.INVOICE_FAILED: handle_invoice_failed,
}


def dispatch(db: Session, event: dict) -> Optional[EventKind]:
    """Route a verified event to its handler. Unknown kinds are ignored."""
    logger.info("Received Stripe webhook: %s (%s)", event.get("type"), event.get("id"))

    kind = EventKind.parse(event.get("type"))
    if kind is None:
        logger.info("Unhandled event type: %s", event.get("type"))
        return None

    obj = event["data"].get("object") or {}
    HANDLERS[kind](db, obj)
    return kind
