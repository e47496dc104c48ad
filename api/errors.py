# api/errors.py
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from catalog.errors import AppError, StoreUnavailableError, format_validation_errors

logger = logging.getLogger("api")


def error_response(request: Request, status_code, message, errors=None, headers=None):
    """
    Build the uniform error envelope.

    Args:
        request (Request): The failed request
        status_code (int): HTTP status to send
        message (str): Summary of what went wrong
        errors (list, optional): Field-level errors, included when non-empty
        headers (dict, optional): Extra response headers

    Returns:
        JSONResponse: {success: False, message, errors?, timestamp, path, method}
    """
    body = {
        "success": False,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
        "method": request.method,
    }
    if errors:
        body["errors"] = errors
    return JSONResponse(body, status_code=status_code, headers=headers)


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(
        request, exc.status_code, exc.message, getattr(exc, "errors", None)
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    raw = exc.errors()
    in_query = all((e.get("loc") or ("",))[0] in ("query", "path") for e in raw)
    message = "Invalid query parameters" if in_query else "Validation failed"
    return error_response(request, 400, message, format_validation_errors(raw))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = f"Route {request.url.path} not found"
    return error_response(
        request, exc.status_code, message, headers=getattr(exc, "headers", None)
    )


async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"{request.method} {request.url.path} store error: {exc!r}")
    err = StoreUnavailableError("Database connection error. Please try again later.")
    return error_response(request, err.status_code, err.message)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} unhandled error")
    return error_response(request, 500, "Something went wrong on the server")


def register_error_handlers(app: FastAPI):
    """
    Attach the error envelope handlers to the app.

    Mapping:
        - AppError subclasses: their own status (400/404/500)
        - RequestValidationError: 400 with every invalid field listed
        - HTTPException (unknown routes, wrong methods): its status
        - PyMongoError: 500, store unavailable
        - anything else: 500
    """
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(PyMongoError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
