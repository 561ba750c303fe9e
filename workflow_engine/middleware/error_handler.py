"""
Exception Handlers

Converts engine exceptions into one JSON error format:

    {"status": "error", "error_code": ..., "message": ..., "details": {...},
     "path": ..., "timestamp": ..., "retryable": ...}
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import settings
from ..exceptions import AppException, ErrorCode
from ..logging_config import get_logger

logger = get_logger(__name__)

_HTTP_ERROR_CODES = {
    400: ErrorCode.VALIDATION_FAILED,
    404: ErrorCode.RESOURCE_NOT_FOUND,
    409: ErrorCode.RESOURCE_CONFLICT,
    422: ErrorCode.VALIDATION_FAILED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def _build_error_response(
    error_code: str,
    message: str,
    path: str,
    details: Optional[Dict[str, Any]] = None,
    retryable: bool = False,
    retry_after: Optional[int] = None,
) -> Dict[str, Any]:
    response = {
        "status": "error",
        "error_code": error_code,
        "message": message,
        "details": jsonable_encoder(details or {}),
        "path": path,
        "timestamp": datetime.utcnow().isoformat(),
        "retryable": retryable,
    }
    if retry_after:
        response["retry_after"] = retry_after
    return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """AppException -> its own status code and error code."""
    logger.error(
        "Application exception",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error_code=exc.error_code.value,
        message=exc.message,
        exc_info=exc.status_code >= 500,
    )
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_error_response(
            error_code=exc.error_code.value,
            message=exc.message,
            path=request.url.path,
            details=exc.details,
            retryable=exc.retryable,
            retry_after=exc.retry_after,
        ),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_code = _HTTP_ERROR_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR).value
    logger.warning(
        "HTTP exception",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_error_response(error_code, str(exc.detail), request.url.path),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    validation_errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        "Validation error",
        path=request.url.path,
        method=request.method,
        error_count=len(validation_errors),
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_build_error_response(
            ErrorCode.VALIDATION_FAILED.value,
            "Request validation failed",
            request.url.path,
            details={"validation_errors": validation_errors},
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled exceptions; internals are hidden unless DEBUG."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
        exc_info=True,
    )
    details = {"type": type(exc).__name__, "message": str(exc)} if settings.DEBUG else {}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_build_error_response(
            ErrorCode.INTERNAL_ERROR.value,
            str(exc) if settings.DEBUG else "Internal server error",
            request.url.path,
            details=details,
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    logger.info("Exception handlers registered")
