"""
Payment status state machine.

    pending    -> processing | completed | failed | cancelled
    processing -> completed | failed | cancelled
    completed  -> refunded

failed, cancelled and refunded are terminal. Re-applying the current status is
always allowed and only fills in fields that are still empty.

Writes are compare-and-set on ``status`` so two concurrent transitions that
both observed ``pending`` cannot both win.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.orm import Session

from gympay.errors import InvalidTransition, NotFound
from gympay.models import PaymentRecord, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}


@dataclass
class TransitionResult:
    record: PaymentRecord
    previous_status: PaymentStatus
    changed: bool


def can_transition(current, target) -> bool:
    current, target = PaymentStatus(current), PaymentStatus(target)
    return current == target or target in ALLOWED_TRANSITIONS[current]


def _load(db: Session, payment_id: int) -> PaymentRecord:
    record = db.get(PaymentRecord, payment_id, populate_existing=True)
    if record is None:
        raise NotFound("Payment not found")
    return record


def _fill_missing(db: Session, record: PaymentRecord, fields: dict) -> bool:
    missing = {
        name: value
        for name, value in fields.items()
        if value is not None and getattr(record, name) is None
    }
    if not missing:
        return False

    stmt = (
        update(PaymentRecord)
        .where(PaymentRecord.id == record.id, PaymentRecord.status == record.status)
        .values(updated_at=utcnow(), **missing)
        .execution_options(synchronize_session=False)
    )
    for name in missing:
        stmt = stmt.where(getattr(PaymentRecord, name).is_(None))
    db.execute(stmt)
    db.commit()
    db.refresh(record)
    return True


def transition(db: Session, payment_id: int, target, **fields) -> TransitionResult:
    """Move a payment to ``target``, writing ``fields`` with the status change.

    Raises InvalidTransition (without touching the row) when the state machine
    forbids the move.
    """
    target = PaymentStatus(target)
    # Absent metadata never clears a stored value
    fields = {name: value for name, value in fields.items() if value is not None}

    # Every successful CAS moves strictly forward, so the number of retries
    # is bounded by the length of the longest path through the machine.
    for _ in range(len(PaymentStatus)):
        record = _load(db, payment_id)
        current = PaymentStatus(record.status)

        if current == target:
            _fill_missing(db, record, fields)
            return TransitionResult(record=record, previous_status=current, changed=False)

        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Cannot move payment {payment_id} from {current.value} to {target.value}"
            )

        result = db.execute(
            update(PaymentRecord)
            .where(PaymentRecord.id == payment_id, PaymentRecord.status == current.value)
            .values(status=target.value, updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            db.refresh(record)
            logger.info("Payment %s: %s -> %s", payment_id, current.value, target.value)
            return TransitionResult(record=record, previous_status=current, changed=True)

        logger.info("Payment %s changed concurrently while moving to %s, re-reading", payment_id, target.value)

    raise InvalidTransition(f"Payment {payment_id} kept changing concurrently")


def force_status(db: Session, record: PaymentRecord, target, **fields) -> TransitionResult:
    """Write ``target`` without consulting the transition table.

    Used by operators. Still compare-and-set against the status the caller
    observed, so the audit trail's before/after pair is accurate.
    """
    target = PaymentStatus(target)
    observed = PaymentStatus(record.status)

    result = db.execute(
        update(PaymentRecord)
        .where(PaymentRecord.id == record.id, PaymentRecord.status == observed.value)
        .values(status=target.value, updated_at=utcnow(), **fields)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        raise InvalidTransition(f"Payment {record.id} was modified concurrently, reload and retry")

    db.refresh(record)
    logger.info("Payment %s forced: %s -> %s", record.id, observed.value, target.value)
    return TransitionResult(record=record, previous_status=observed, changed=observed != target)
