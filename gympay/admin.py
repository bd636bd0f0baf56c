"""
Operator overrides for payment records.

Refunds here are bookkeeping only: the money is assumed to have been
returned through the Stripe dashboard already.
"""
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from gympay import config
from gympay.audit import AuditService
from gympay.auth import CurrentUser
from gympay.errors import InvalidInput, InvalidTransition, NotFound
from gympay.lifecycle import force_status
from gympay.models import PaymentRecord, PaymentStatus, utcnow
from gympay.schemas import AdminPaymentCreateRequest, AdminPaymentUpdateRequest

logger = logging.getLogger(__name__)

REFUNDABLE = (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value)


def _get(db: Session, payment_id: int) -> PaymentRecord:
    payment = db.get(PaymentRecord, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    return payment


def _append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    return f"{existing} | {note}" if existing else note


def create_payment(db: Session, request: AdminPaymentCreateRequest, admin: CurrentUser) -> PaymentRecord:
    payment = PaymentRecord(
        enrollment_id=request.enrollment_id,
        amount=request.amount,
        currency=config.CURRENCY,
        payment_type=request.payment_type.value,
        payment_method="admin_created",
        status=PaymentStatus.PENDING.value,
        description=request.description or f"{request.payment_type.value} payment",
        due_date=(request.due_date or date.today()).isoformat(),
        parent_email=request.parent_email,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)

    AuditService.record(
        db, "ADMIN_PAYMENT_CREATED",
        details={
            "paymentId": payment.id,
            "enrollmentId": request.enrollment_id,
            "amount": float(request.amount),
            "paymentType": request.payment_type.value,
        },
        actor_id=admin.id,
    )
    return payment


def update_status(db: Session, request: AdminPaymentUpdateRequest, admin: CurrentUser) -> PaymentRecord:
    payment = _get(db, request.id)
    old_status = payment.status

    if request.status == PaymentStatus.REFUNDED and request.refund_amount is not None:
        if request.refund_amount <= 0 or request.refund_amount > Decimal(payment.amount):
            raise InvalidInput(
                f"Refund amount must be greater than 0 and at most {Decimal(payment.amount):.2f}"
            )
        if payment.status not in REFUNDABLE:
            raise InvalidTransition(f"Cannot refund a {payment.status} payment")
        result = force_status(
            db, payment, PaymentStatus.REFUNDED,
            refund_amount=request.refund_amount,
            notes=_append_note(payment.notes, request.notes or "Admin refund"),
        )
    else:
        fields = {"notes": _append_note(payment.notes, request.notes)}
        if request.status != PaymentStatus.REFUNDED:
            fields["refund_amount"] = None
        result = force_status(db, payment, request.status, **fields)

    AuditService.record(
        db, "ADMIN_PAYMENT_UPDATED",
        details={
            "paymentId": payment.id,
            "oldStatus": old_status,
            "newStatus": request.status.value,
            "refundAmount": float(request.refund_amount) if request.refund_amount is not None else None,
        },
        actor_id=admin.id,
    )
    return result.record


def delete_payment(db: Session, payment_id: int, admin: CurrentUser):
    payment = _get(db, payment_id)
    if payment.status != PaymentStatus.PENDING.value:
        raise InvalidInput("Can only delete pending payments")

    amount = float(payment.amount)
    result = db.execute(
        delete(PaymentRecord)
        .where(PaymentRecord.id == payment_id, PaymentRecord.status == PaymentStatus.PENDING.value)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        # Status moved on between the read and the delete
        raise InvalidInput("Can only delete pending payments")

    AuditService.record(
        db, "ADMIN_PAYMENT_DELETED",
        details={"paymentId": payment_id, "paymentStatus": PaymentStatus.PENDING.value, "amount": amount},
        actor_id=admin.id,
    )


def list_payments(
    db: Session,
    status: Optional[PaymentStatus] = None,
    payment_type=None,
    enrollment_id: Optional[int] = None,
    overdue: bool = False,
    limit: int = 100,
) -> list[PaymentRecord]:
    query = db.query(PaymentRecord)
    if status:
        query = query.filter(PaymentRecord.status == status.value)
    if payment_type:
        query = query.filter(PaymentRecord.payment_type == payment_type.value)
    if enrollment_id is not None:
        query = query.filter(PaymentRecord.enrollment_id == enrollment_id)
    if overdue:
        query = query.filter(
            PaymentRecord.status == PaymentStatus.PENDING.value,
            PaymentRecord.due_date.isnot(None),
            PaymentRecord.due_date < date.today().isoformat(),
        )
    return query.order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc()).limit(limit).all()


def summary(db: Session) -> dict:
    counts = dict(
        db.query(PaymentRecord.status, func.count(PaymentRecord.id))
        .group_by(PaymentRecord.status)
        .all()
    )
    revenue = (
        db.query(func.coalesce(func.sum(PaymentRecord.amount), 0))
        .filter(PaymentRecord.status == PaymentStatus.COMPLETED.value)
        .scalar()
    )
    last_week = utcnow() - timedelta(days=7)
    recent = db.query(func.count(PaymentRecord.id)).filter(PaymentRecord.created_at >= last_week).scalar()

    return {
        "total": sum(counts.values()),
        "completed": counts.get(PaymentStatus.COMPLETED.value, 0),
        "pending": counts.get(PaymentStatus.PENDING.value, 0),
        "failed": counts.get(PaymentStatus.FAILED.value, 0),
        "totalRevenue": float(revenue or 0),
        "recentPayments": recent or 0,
    }


def revenue_report(db: Session, start_date: date, end_date: date) -> dict:
    """Completed payments paid within [start_date, end_date], grouped by type."""
    if end_date < start_date:
        raise InvalidInput("endDate must not be before startDate")

    rows = (
        db.query(
            PaymentRecord.payment_type,
            func.count(PaymentRecord.id),
            func.coalesce(func.sum(PaymentRecord.amount), 0),
        )
        .filter(
            PaymentRecord.status == PaymentStatus.COMPLETED.value,
            PaymentRecord.paid_date >= datetime.combine(start_date, time.min),
            PaymentRecord.paid_date <= datetime.combine(end_date, time.max),
        )
        .group_by(PaymentRecord.payment_type)
        .order_by(PaymentRecord.payment_type)
        .all()
    )
    report = [
        {"paymentType": payment_type, "transactionCount": count, "totalAmount": float(total)}
        for payment_type, count, total in rows
    ]
    return {
        "report": report,
        "summary": {
            "totalRevenue": sum(item["totalAmount"] for item in report),
            "totalTransactions": sum(item["transactionCount"] for item in report),
        },
    }
