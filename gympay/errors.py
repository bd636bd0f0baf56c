import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PaymentServiceError(Exception):
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: str = None, details=None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details


class InvalidInput(PaymentServiceError):
    status_code = 400
    public_message = "Invalid input"


class Unauthorized(PaymentServiceError):
    status_code = 401
    public_message = "Invalid or missing token"


class Forbidden(PaymentServiceError):
    status_code = 403
    public_message = "Admin access required"


class NotFound(PaymentServiceError):
    status_code = 404
    public_message = "Not found"


class RateLimited(PaymentServiceError):
    status_code = 429
    public_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str = None):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidTransition(PaymentServiceError):
    status_code = 400
    public_message = "Invalid payment status transition"


class InvalidSignature(PaymentServiceError):
    status_code = 400
    public_message = "Webhook signature verification failed"


class UpstreamFailure(PaymentServiceError):
    """The payment processor failed; the message returned to callers stays generic."""

    status_code = 502
    public_message = "Payment processing failed"


class Internal(PaymentServiceError):
    status_code = 500


# Messages of these are safe to show; everything else gets its generic message.
_VERBATIM = (InvalidInput, Unauthorized, Forbidden, NotFound, RateLimited, InvalidTransition, InvalidSignature)


def _body(message: str, details=None) -> dict:
    body = {"success": False, "error": message}
    if details is not None:
        body["details"] = details
    return body


async def payment_error_handler(request: Request, exc: PaymentServiceError):
    if isinstance(exc, _VERBATIM):
        message = exc.message
    else:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        message = exc.public_message

    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(status_code=exc.status_code, content=_body(message, exc.details), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=_body("Invalid input", details))


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_body(Internal.public_message))


def register_error_handlers(app):
    app.add_exception_handler(PaymentServiceError, payment_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
