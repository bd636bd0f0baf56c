from datetime import datetime

import pytest
from sqlalchemy import update

from conftest import TestingSessionLocal, fetch_payment
from gympay import lifecycle
from gympay.errors import InvalidTransition, NotFound
from gympay.lifecycle import can_transition, force_status, transition
from gympay.models import PaymentRecord, PaymentStatus

ALL = list(PaymentStatus)


@pytest.mark.parametrize("current,target,allowed", [
    ("pending", "processing", True),
    ("pending", "completed", True),
    ("pending", "failed", True),
    ("pending", "cancelled", True),
    ("pending", "refunded", False),
    ("processing", "completed", True),
    ("processing", "pending", False),
    ("completed", "refunded", True),
    ("completed", "pending", False),
    ("completed", "failed", False),
    ("failed", "completed", False),
    ("cancelled", "pending", False),
    ("refunded", "completed", False),
])
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


@pytest.mark.parametrize("status", ALL)
def test_reapplying_current_status_is_allowed(status):
    assert can_transition(status, status)


def test_completed_to_pending_is_rejected(db, make_payment):
    payment = make_payment(status="completed", receipt_url="https://r/1")

    with pytest.raises(InvalidTransition):
        transition(db, payment.id, PaymentStatus.PENDING)

    stored = fetch_payment(payment.id)
    assert stored.status == "completed"
    assert stored.receipt_url == "https://r/1"


def test_transition_writes_fields_with_status(db, make_payment):
    payment = make_payment()
    paid = datetime(2026, 5, 1, 9, 30)

    result = transition(db, payment.id, "completed", paid_date=paid, receipt_url="https://r/2")

    assert result.changed is True
    assert result.previous_status == PaymentStatus.PENDING
    stored = fetch_payment(payment.id)
    assert stored.paid_date == paid
    assert stored.receipt_url == "https://r/2"


def test_same_status_only_fills_missing_fields(db, make_payment):
    paid = datetime(2026, 5, 1, 9, 30)
    payment = make_payment(status="completed", paid_date=paid)

    result = transition(
        db, payment.id, "completed",
        paid_date=datetime(2030, 1, 1), receipt_url="https://r/3",
    )

    assert result.changed is False
    stored = fetch_payment(payment.id)
    assert stored.paid_date == paid
    assert stored.receipt_url == "https://r/3"


def test_transition_unknown_payment(db):
    with pytest.raises(NotFound):
        transition(db, 12345, "completed")


def _completed_by_someone_else_after_first_read(mocker, payment_id):
    real_load = lifecycle._load
    calls = []

    def load(db, pid):
        record = real_load(db, pid)
        if not calls:
            calls.append(pid)
            other = TestingSessionLocal()
            other.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment_id)
                .values(status="completed", receipt_url="https://r/webhook")
            )
            other.commit()
            other.close()
        return record

    mocker.patch.object(lifecycle, "_load", side_effect=load)


def test_lost_race_is_re_evaluated(db, make_payment, mocker):
    payment = make_payment()
    _completed_by_someone_else_after_first_read(mocker, payment.id)

    # Both sides read "pending"; the failed write must not overwrite the winner.
    with pytest.raises(InvalidTransition):
        transition(db, payment.id, "failed", failure_reason="late")

    stored = fetch_payment(payment.id)
    assert stored.status == "completed"
    assert stored.failure_reason is None


def test_racing_to_the_same_status_is_a_no_op(db, make_payment, mocker):
    payment = make_payment()
    _completed_by_someone_else_after_first_read(mocker, payment.id)

    result = transition(db, payment.id, "completed", paid_date=datetime(2026, 5, 1), receipt_url="https://r/client")

    assert result.changed is False
    stored = fetch_payment(payment.id)
    assert stored.status == "completed"
    assert stored.receipt_url == "https://r/webhook"
    assert stored.paid_date == datetime(2026, 5, 1)


def test_force_status_detects_concurrent_change(db, make_payment):
    payment = make_payment()
    stale = db.get(PaymentRecord, payment.id)

    other = TestingSessionLocal()
    other.execute(update(PaymentRecord).where(PaymentRecord.id == payment.id).values(status="completed"))
    other.commit()
    other.close()

    with pytest.raises(InvalidTransition):
        force_status(db, stale, "cancelled")
    assert fetch_payment(payment.id).status == "completed"
