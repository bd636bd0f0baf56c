import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
)

from gympay.database import Base

MOCK_INTENT_PREFIX = "mock_pi_"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentType(str, enum.Enum):
    REGISTRATION = "registration"
    TUITION = "tuition"
    LATE_FEE = "late_fee"
    EQUIPMENT = "equipment"
    BIRTHDAY_PARTY = "birthday_party"


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    external_intent_id = Column(String(255), unique=True, index=True, nullable=True)  # Stripe PaymentIntent ID or mock_pi_*
    external_customer_id = Column(String(255), nullable=True)
    enrollment_id = Column(Integer, nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="usd")
    payment_type = Column(String(32), nullable=False)
    payment_method = Column(String(32))          # mock | card | admin_created
    payment_method_id = Column(String(255))
    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    parent_email = Column(String(255))
    description = Column(String(512))
    due_date = Column(String(10))                # YYYY-MM-DD
    billing_address = Column(JSON, nullable=True)

    paid_date = Column(DateTime, nullable=True)
    failure_reason = Column(String(512))
    receipt_url = Column(String(1024))
    processing_fee = Column(Numeric(10, 2))
    refund_amount = Column(Numeric(10, 2))
    notes = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_mock(self) -> bool:
        return bool(self.external_intent_id) and self.external_intent_id.startswith(MOCK_INTENT_PREFIX)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "paymentIntentId": self.external_intent_id,
            "customerId": self.external_customer_id,
            "enrollmentId": self.enrollment_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "paymentType": self.payment_type,
            "paymentMethod": self.payment_method,
            "status": self.status,
            "parentEmail": self.parent_email,
            "description": self.description,
            "dueDate": self.due_date,
            "billingAddress": self.billing_address,
            "paidDate": _iso(self.paid_date),
            "failureReason": self.failure_reason,
            "receiptUrl": self.receipt_url,
            "processingFee": _money(self.processing_fee),
            "refundAmount": _money(self.refund_amount),
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class Enrollment(Base):
    """Read-only view of the enrollment table owned by the enrollment service."""

    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    student_name = Column(String(128))
    parent_name = Column(String(128))
    parent_email = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    # Actions: PAYMENT_INTENT_CREATED, PAYMENT_CONFIRMED, PAYMENT_WEBHOOK_SUCCESS,
    #          PAYMENT_WEBHOOK_FAILED, PAYMENT_DISPUTE_CREATED, ADMIN_PAYMENT_UPDATED, ...
    resource = Column(String(32), nullable=False, default="payments")
    details = Column(JSON, default=dict)
    success = Column(Boolean, nullable=False, default=True)
    actor_id = Column(String(64))
    ip_address = Column(String(45))
    created_at = Column(DateTime, default=utcnow)
