import logging

from fastapi import Depends, FastAPI, Header, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from gympay import config, reconciler, stripe_service
from gympay.admin_routes import router as admin_router
from gympay.audit import AuditService
from gympay.database import get_db, init_db
from gympay.errors import InvalidSignature, register_error_handlers
from gympay.routes import router

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Gymnastics School Payment Service")

app.include_router(router)
app.include_router(admin_router)
register_error_handlers(app)

init_db()


@app.post("/payments/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
):
    if not config.STRIPE_WEBHOOK_SECRET:
        logger.warning("Stripe webhook received but no webhook secret is configured - ignoring")
        return {"received": True}

    payload = await request.body()

    try:
        event = stripe_service.construct_event(payload, stripe_signature, config.STRIPE_WEBHOOK_SECRET)
    except InvalidSignature as e:
        logger.error("Webhook signature verification failed: %s", e.__cause__ or "missing signature")
        AuditService.record(
            db, "WEBHOOK_SIGNATURE_VERIFICATION_FAILED",
            details={"error": str(e.__cause__ or "missing signature")},
            success=False,
            ip_address=request.client.host if request.client else None,
        )
        raise

    try:
        reconciler.dispatch(db, event)
    except Exception as e:
        db.rollback()
        AuditService.record(
            db, "WEBHOOK_PROCESSING_ERROR",
            details={"eventId": event.get("id"), "type": event.get("type"), "error": str(e)},
            success=False,
        )
        raise

    return {"received": True}


@app.get("/health", tags=["Health"])
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {
        "status": "healthy",
        "paymentsEnabled": config.PAYMENTS_ENABLED,
        "webhooksConfigured": bool(config.STRIPE_WEBHOOK_SECRET),
    }
