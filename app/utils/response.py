import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.errors import BillingError

logger = logging.getLogger(__name__)


def create_response(
    message: str,
    data=None,
    status_code: int = status.HTTP_200_OK,
    status_text: str | None = None
) -> JSONResponse:
    """Wrap ``data`` in the ``{message, data, status, status_code}`` envelope."""
    body = {
        "message": message,
        "data": jsonable_encoder(data),
        "status": status_text or ("error" if status_code >= 400 else "success"),
        "status_code": status_code,
    }
    return JSONResponse(status_code=status_code, content=body)


def error_response(message: str, status_code: int, data=None) -> JSONResponse:
    return create_response(message, data, status_code, status_text="error")


def handle_exception(error: Exception, fallback_message: str = "Internal server error") -> JSONResponse:
    """Map billing errors and HTTP errors to the envelope; anything else is a 500."""
    if isinstance(error, BillingError):
        return error_response(error.message, error.status_code)

    if isinstance(error, HTTPException):
        message = error.detail if isinstance(error.detail, str) else str(error.detail)
        return error_response(message, error.status_code)

    logger.error("Unhandled error: %s", error, exc_info=error)
    return error_response(fallback_message, status.HTTP_500_INTERNAL_SERVER_ERROR)


def register_exception_handlers(app: FastAPI) -> None:
    """Keep errors raised outside route bodies (dependencies, validation) in the same envelope."""

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return handle_exception(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(
            "Invalid request",
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            data={"errors": [{"loc": err["loc"], "msg": err["msg"], "type": err["type"]} for err in exc.errors()]},
        )
