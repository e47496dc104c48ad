# api/rate_limit.py
import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

load_dotenv()

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false"
READ_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "100/15 minutes")
WRITE_LIMIT = os.getenv("RATE_LIMIT_WRITE", "20/15 minutes")
STATS_LIMIT = os.getenv("RATE_LIMIT_STATS", "30/5 minutes")

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)

logger = logging.getLogger("api")


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """
    Build the 429 response for a client that exceeded a route limit.

    Args:
        request (Request): The rejected request
        exc (RateLimitExceeded): Raised by the slowapi decorator

    Returns:
        JSONResponse: Error envelope with status 429:
            - success: False
            - message: Human readable explanation
            - type: "RATE_LIMIT_EXCEEDED"
            - limit: The limit that was hit, e.g. "20 per 15 minute"
    """
    logger.warning(
        f"Rate limit exceeded for IP: {get_remote_address(request)} on {request.url.path}"
    )
    response = JSONResponse(
        {
            "success": False,
            "message": "Too many requests from this IP, please try again later.",
            "type": "RATE_LIMIT_EXCEEDED",
            "limit": exc.detail,
        },
        status_code=429,
    )
    return request.app.state.limiter._inject_headers(
        response, request.state.view_rate_limit
    )


def register_rate_limit(app: FastAPI):
    """
    Register the slowapi limiter and its 429 handler on the FastAPI app.

    Args:
        app (FastAPI): The FastAPI application instance to configure

    Side Effects:
        - Sets app.state.limiter to the module limiter
        - Registers rate_limit_exceeded_handler for RateLimitExceeded

    Note:
        Limits are declared per route with @limiter.limit(...). Set
        RATE_LIMIT_ENABLED=false to turn them all off.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
