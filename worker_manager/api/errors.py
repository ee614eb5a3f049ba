from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from worker_manager.core.errors import (
    InvalidRequestError,
    PortRangeExhausted,
    StoreUnavailable,
    SupervisorShuttingDown,
    WorkerManagerError,
)

log = logging.getLogger("worker-manager.api")


def format_error(message: str, *, err_type: str = "server_error", code: str | None = None, status_code: int | None = None) -> JSONResponse:
    """Render the error envelope shared by every endpoint."""
    payload = {"error": {"message": message, "type": err_type, "code": code}}
    if status_code is not None:
        status = status_code
    elif err_type == "invalid_request_error":
        status = 400
    elif err_type == "not_found":
        status = 404
    elif err_type == "conflict":
        status = 409
    elif err_type == "unavailable":
        status = 503
    else:
        status = 500
    return JSONResponse(payload, status_code=status)


def _error_code(exc: Exception) -> str:
    return type(exc).__name__


async def _handle_worker_manager_error(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, InvalidRequestError):
        return format_error(str(exc), err_type="invalid_request_error", code=_error_code(exc))
    if isinstance(exc, PortRangeExhausted):
        return format_error(str(exc), err_type="conflict", code=_error_code(exc))
    if isinstance(exc, (SupervisorShuttingDown, StoreUnavailable)):
        return format_error(str(exc), err_type="unavailable", code=_error_code(exc))
    log.error("request.failed", extra={"endpoint": str(request.url.path), "error": str(exc)}, exc_info=exc)
    return format_error(str(exc), code=_error_code(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WorkerManagerError, _handle_worker_manager_error)
