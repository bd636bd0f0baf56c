from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from gympay import payments
from gympay.auth import CurrentUser, require_admin
from gympay.database import get_db
from gympay.rate_limiter import rate_limit
from gympay.schemas import PaymentConfirmRequest, PaymentCreateRequest

router = APIRouter(tags=["Payments"])


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/payments")
def create_payment_api(
    payload: PaymentCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    _throttle=Depends(rate_limit("payments:create")),
):
    initiated = payments.initiate_payment(db, payload, ip_address=client_ip(request))

    body = {
        "success": True,
        "paymentId": initiated.payment.id,
        "clientSecret": initiated.client_secret,
    }
    if initiated.mock_mode:
        body["mockMode"] = True
    return body


@router.patch("/payments")
def confirm_payment_api(
    payload: PaymentConfirmRequest,
    request: Request,
    db: Session = Depends(get_db),
    _throttle=Depends(rate_limit("payments:confirm")),
):
    outcome = payments.confirm_payment(db, payload, ip_address=client_ip(request))

    body = {"success": outcome.success, "message": outcome.message, "status": outcome.payment.status}
    if outcome.mock_mode:
        body["mockMode"] = True
    if not outcome.success and outcome.payment.status == "failed":
        body["error"] = outcome.message
        return JSONResponse(status_code=400, content=body)
    return body


@router.get("/payments")
def get_payments_api(
    paymentId: Optional[int] = None,
    enrollmentId: Optional[int] = None,
    db: Session = Depends(get_db),
    _throttle=Depends(rate_limit("payments:read")),
    user: CurrentUser = Depends(require_admin),
):
    records = payments.list_payments(db, payment_id=paymentId, enrollment_id=enrollmentId)
    return {"success": True, "payments": [p.to_dict() for p in records]}
