"""
Global error handling middleware.

WHAT: Translate exceptions to appropriate HTTP responses
WHY: Consistent {success, error, timestamp} responses with proper status codes
HOW: FastAPI exception handlers keyed on the error class of each code
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime
from uuid import uuid4

from ..models.errors import ErrorClass, error_class_for
from ..utils.exceptions import BusinessException, OfferOperationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

STATUS_BY_ERROR_CLASS = {
    ErrorClass.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorClass.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorClass.STATE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorClass.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorClass.CONCURRENCY: status.HTTP_409_CONFLICT,
    ErrorClass.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload or missing identity header
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error: {exc.errors()}")

    # Clean up error details to be JSON serializable
    cleaned_errors = []
    for error in exc.errors():
        cleaned_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            cleaned_error["ctx"] = {
                k: str(v) if isinstance(v, Exception) else v
                for k, v in error["ctx"].items()
            }
        cleaned_errors.append(cleaned_error)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": cleaned_errors,
            },
            "timestamp": datetime.now().isoformat()
        }
    )


async def offer_operation_error_handler(request: Request, exc: OfferOperationError):
    """
    Handle OfferOperationError.

    WHAT: Failed engine operation surfaced by an endpoint
    WHY: Clients get the engine's {code, message, details} unchanged
    HOW: Status code derived from the code's error class
    """
    status_code = STATUS_BY_ERROR_CLASS[error_class_for(exc.error_code)]
    if status_code >= 500:
        logger.error(f"Offer operation failed: {exc.code} - {exc.message}")
    else:
        logger.warning(f"Offer operation rejected: {exc.code} - {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": exc.to_error().to_dict(),
            "timestamp": datetime.now().isoformat()
        }
    )


async def business_exception_handler(request: Request, exc: BusinessException):
    """Handle any other BusinessException as a 400."""
    logger.warning(f"Business exception: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {"code": exc.code, "message": exc.message, "details": None},
            "timestamp": datetime.now().isoformat()
        }
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Handle anything unexpected.

    Full detail stays in the server log; the client only sees a reference id.
    """
    reference = str(uuid4())
    logger.exception(f"Unhandled error on {request.method} {request.url.path} (reference {reference})")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {"reference": reference},
            },
            "timestamp": datetime.now().isoformat()
        }
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    WHAT: Attach handlers to app
    WHY: Centralized error handling
    HOW: Use app.add_exception_handler

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(OfferOperationError, offer_operation_error_handler)
    app.add_exception_handler(BusinessException, business_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.info("Exception handlers registered")
