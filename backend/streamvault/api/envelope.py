from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from streamvault.core.errors import IncompleteUpload, StreamVaultException
import logging

logger = logging.getLogger(__name__)


def ok(data=None) -> dict:
    """success envelope shared by every route"""
    return {"status": 1, "data": data}


def error_body(message: str, **extra) -> dict:
    return {"status": 0, "error": message, **extra}


def streamvault_exception_handler(request: Request, exc: StreamVaultException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")

    extra = {}
    if isinstance(exc, IncompleteUpload):
        extra["missing"] = exc.missing
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, **extra))


def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "invalid request"))
    return JSONResponse(status_code=422, content=error_body(message))
