"""Maps settlement errors to HTTP responses."""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from gigsettle.commerce.errors import (
    InsufficientBalanceError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    SettlementError,
    UnauthorizedError,
)
from gigsettle.storage.base import StorageError

from .logging_config import get_logger

logger = get_logger("gigsettle.errors")

_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (InsufficientBalanceError, status.HTTP_400_BAD_REQUEST),
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
)


def status_for(error: SettlementError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    status_code = status_for(exc)
    body = {"detail": exc.message, "error": exc.code}
    if isinstance(exc, InsufficientBalanceError):
        body["available_balance"] = str(exc.available)
        body["requested"] = str(exc.requested)
    if isinstance(exc, InvalidTransitionError) and exc.current_status:
        body["current_status"] = exc.current_status
    logger.info(f"{request.method} {request.url.path} | {status_code} {exc.code}")
    return JSONResponse(status_code=status_code, content=body)


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} | storage error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage unavailable", "error": "storage_unavailable"},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SettlementError, settlement_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
