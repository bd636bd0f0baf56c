"""
Payment initiation, client confirmation and lookup.

The confirmation handler is a fast path for the checkout page. It never
trusts the client: real intents are re-read from Stripe. The webhook
reconciler stays the authority, and both write through the same
idempotent state machine.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import stripe
from sqlalchemy.orm import Session

from gympay import config, stripe_service
from gympay.audit import AuditService
from gympay.errors import InvalidInput, NotFound, UpstreamFailure
from gympay.lifecycle import transition
from gympay.models import (
    MOCK_INTENT_PREFIX,
    Enrollment,
    PaymentRecord,
    PaymentStatus,
    utcnow,
)
from gympay.schemas import PaymentConfirmRequest, PaymentCreateRequest

logger = logging.getLogger(__name__)

MOCK_CLIENT_SECRET = "mock_client_secret"


@dataclass
class InitiatedPayment:
    payment: PaymentRecord
    client_secret: str
    mock_mode: bool


@dataclass
class ConfirmationOutcome:
    payment: PaymentRecord
    success: bool
    message: str
    mock_mode: bool = False


def get_enrollment(db: Session, enrollment_id: int) -> Enrollment:
    enrollment = db.get(Enrollment, enrollment_id)
    if enrollment is None:
        raise NotFound("Enrollment not found")
    return enrollment


def new_mock_intent_id() -> str:
    # Stripe ids look like pi_...; the reserved prefix keeps the namespaces apart.
    return f"{MOCK_INTENT_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def mock_receipt_url(intent_id: str) -> str:
    return f"https://receipts.invalid/mock/{intent_id}"


def _insert(db: Session, **fields) -> PaymentRecord:
    payment = PaymentRecord(status=PaymentStatus.PENDING.value, currency=config.CURRENCY, **fields)
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def initiate_payment(db: Session, request: PaymentCreateRequest, ip_address: str = None) -> InitiatedPayment:
    enrollment = get_enrollment(db, request.enrollment_id)
    email = request.customer_email or enrollment.parent_email
    description = request.description or f"{request.payment_type.value} payment"

    if not config.PAYMENTS_ENABLED:
        intent_id = new_mock_intent_id()
        payment = _insert(
            db,
            external_intent_id=intent_id,
            enrollment_id=enrollment.id,
            amount=request.amount,
            payment_type=request.payment_type.value,
            payment_method="mock",
            parent_email=email,
            description=description,
            billing_address=request.billing_address,
        )
        logger.info("Created mock payment %s (%s) for enrollment %s", payment.id, intent_id, enrollment.id)
        AuditService.record(
            db, "PAYMENT_INTENT_CREATED",
            details={"paymentId": payment.id, "paymentIntentId": intent_id,
                     "amount": float(request.amount), "mockMode": True},
            ip_address=ip_address,
        )
        return InitiatedPayment(payment=payment, client_secret=MOCK_CLIENT_SECRET, mock_mode=True)

    # The local row is written only once Stripe has handed back an intent id.
    try:
        customer = stripe_service.find_or_create_customer(
            email,
            name=enrollment.parent_name,
            metadata={"enrollmentId": str(enrollment.id)},
        )
        intent = stripe_service.create_payment(
            request.amount,
            config.CURRENCY,
            customer.id,
            metadata={
                "enrollmentId": str(enrollment.id),
                "paymentType": request.payment_type.value,
                "studentName": enrollment.student_name or "",
            },
            description=description,
        )
    except stripe.StripeError as e:
        logger.error("Stripe error creating intent for enrollment %s: %s", enrollment.id, e)
        AuditService.record(
            db, "PAYMENT_INTENT_ERROR",
            details={"enrollmentId": enrollment.id, "error": str(e)},
            success=False, ip_address=ip_address,
        )
        raise UpstreamFailure("Stripe payment intent creation failed") from e

    payment = _insert(
        db,
        external_intent_id=intent.id,
        external_customer_id=customer.id,
        enrollment_id=enrollment.id,
        amount=request.amount,
        payment_type=request.payment_type.value,
        payment_method="card",
        parent_email=email,
        description=description,
        billing_address=request.billing_address,
    )
    logger.info("Created payment %s (%s) for enrollment %s", payment.id, intent.id, enrollment.id)
    AuditService.record(
        db, "PAYMENT_INTENT_CREATED",
        details={"paymentId": payment.id, "paymentIntentId": intent.id, "amount": float(request.amount)},
        ip_address=ip_address,
    )
    return InitiatedPayment(payment=payment, client_secret=intent.client_secret, mock_mode=False)


def find_by_intent(db: Session, intent_id: str) -> Optional[PaymentRecord]:
    return db.query(PaymentRecord).filter(PaymentRecord.external_intent_id == intent_id).first()


def _charge_of(intent) -> Optional[dict]:
    charge = intent.get("latest_charge")
    if isinstance(charge, dict):
        return charge
    charges = (intent.get("charges") or {}).get("data") or []
    return charges[0] if charges else None


def _failure_reason(intent) -> str:
    reason = f"Payment status: {intent.get('status')}"
    error = intent.get("last_payment_error")
    if error and error.get("message"):
        reason = f"{reason} ({error.get('message')})"
    return reason


def confirm_payment(db: Session, request: PaymentConfirmRequest, ip_address: str = None) -> ConfirmationOutcome:
    payment = find_by_intent(db, request.payment_intent_id)
    if payment is None:
        raise NotFound("Payment not found")

    if payment.is_mock:
        result = transition(
            db, payment.id, PaymentStatus.COMPLETED,
            paid_date=utcnow(),
            receipt_url=mock_receipt_url(payment.external_intent_id),
            payment_method_id=request.payment_method_id,
        )
        AuditService.record(
            db, "PAYMENT_CONFIRMED",
            details={"paymentId": payment.id, "paymentIntentId": payment.external_intent_id,
                     "mockMode": True, "changed": result.changed},
            ip_address=ip_address,
        )
        return ConfirmationOutcome(result.record, True, "Payment completed (mock mode)", mock_mode=True)

    if not config.PAYMENTS_ENABLED:
        raise UpstreamFailure("Payment processing is not configured")

    try:
        intent = stripe_service.retrieve_payment(payment.external_intent_id)
    except stripe.StripeError as e:
        logger.error("Stripe error retrieving %s: %s", payment.external_intent_id, e)
        raise UpstreamFailure("Could not verify payment with Stripe") from e

    status = intent.get("status")
    if status == "succeeded":
        charge = _charge_of(intent)
        paid_at = intent.get("created")
        result = transition(
            db, payment.id, PaymentStatus.COMPLETED,
            paid_date=datetime.fromtimestamp(paid_at, tz=timezone.utc) if paid_at else utcnow(),
            receipt_url=charge.get("receipt_url") if charge else None,
            payment_method_id=intent.get("payment_method") or request.payment_method_id,
        )
        AuditService.record(
            db, "PAYMENT_CONFIRMED",
            details={"paymentId": payment.id, "paymentIntentId": payment.external_intent_id,
                     "changed": result.changed},
            ip_address=ip_address,
        )
        return ConfirmationOutcome(result.record, True, "Payment completed successfully")

    if status == "processing":
        result = transition(db, payment.id, PaymentStatus.PROCESSING)
        return ConfirmationOutcome(result.record, False, "Payment is processing")

    reason = _failure_reason(intent)
    result = transition(db, payment.id, PaymentStatus.FAILED, failure_reason=reason)
    AuditService.record(
        db, "PAYMENT_CONFIRMATION_FAILED",
        details={"paymentId": payment.id, "paymentIntentId": payment.external_intent_id, "reason": reason},
        success=False, ip_address=ip_address,
    )
    return ConfirmationOutcome(result.record, False, f"Payment failed: {status}")


def list_payments(db: Session, payment_id: int = None, enrollment_id: int = None) -> list[PaymentRecord]:
    if payment_id is not None:
        payment = db.get(PaymentRecord, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        return [payment]
    if enrollment_id is not None:
        return (
            db.query(PaymentRecord)
            .filter(PaymentRecord.enrollment_id == enrollment_id)
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .all()
        )
    raise InvalidInput("paymentId or enrollmentId is required")
