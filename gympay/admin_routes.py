from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from gympay import admin
from gympay.audit import AuditService
from gympay.auth import CurrentUser, require_admin
from gympay.database import get_db
from gympay.errors import InvalidInput
from gympay.models import PaymentStatus, PaymentType
from gympay.rate_limiter import rate_limit
from gympay.schemas import AdminPaymentCreateRequest, AdminPaymentUpdateRequest

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/payments")
def list_payments(
    status: Optional[PaymentStatus] = None,
    paymentType: Optional[PaymentType] = None,
    enrollmentId: Optional[int] = None,
    overdue: bool = False,
    startDate: Optional[date] = None,
    endDate: Optional[date] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    _throttle=Depends(rate_limit("admin:payments:read")),
    user: CurrentUser = Depends(require_admin),
):
    if startDate and endDate:
        report = admin.revenue_report(db, startDate, endDate)
        return {"success": True, **report}
    if startDate or endDate:
        raise InvalidInput("startDate and endDate must be given together")
    if not 1 <= limit <= 1000:
        raise InvalidInput("limit must be between 1 and 1000")

    records = admin.list_payments(
        db, status=status, payment_type=paymentType,
        enrollment_id=enrollmentId, overdue=overdue, limit=limit,
    )
    AuditService.record(
        db, "ADMIN_PAYMENTS_VIEW",
        details={"filtersApplied": {
            "status": status.value if status else None,
            "paymentType": paymentType.value if paymentType else None,
            "enrollmentId": enrollmentId,
            "overdue": overdue,
            "limit": limit,
        }},
        actor_id=user.id,
    )
    return {
        "success": True,
        "payments": [p.to_dict() for p in records],
        "summary": admin.summary(db),
    }


@router.post("/payments")
def create_payment(
    payload: AdminPaymentCreateRequest,
    db: Session = Depends(get_db),
    _throttle=Depends(rate_limit("admin:payments:create")),
    user: CurrentUser = Depends(require_admin),
):
    payment = admin.create_payment(db, payload, user)
    return {"success": True, "message": "Payment created successfully", "paymentId": payment.id}


@router.patch("/payments")
def update_payment(
    payload: AdminPaymentUpdateRequest,
    db: Session = Depends(get_db),
    _throttle=Depends(rate_limit("admin:payments:update")),
    user: CurrentUser = Depends(require_admin),
):
    payment = admin.update_status(db, payload, user)
    return {"success": True, "message": "Payment updated successfully", "payment": payment.to_dict()}


@router.delete("/payments")
def delete_payment(
    id: Optional[int] = None,
    db: Session = Depends(get_db),
    _throttle=Depends(rate_limit("admin:payments:delete")),
    user: CurrentUser = Depends(require_admin),
):
    if id is None:
        raise InvalidInput("Payment ID required")
    admin.delete_payment(db, id, user)
    return {"success": True, "message": "Payment deleted successfully"}
