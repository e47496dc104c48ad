# api/main.py
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Literal, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Body, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from catalog import books
from catalog.db import close_client, connection_status, get_db, init_db
from catalog.errors import RequestValidationFailed, format_validation_errors
from catalog.models import BookCreate, BookUpdate, TagIn
from catalog.query import DEFAULT_LIMIT, DEFAULT_SORT, ListParams
from .errors import register_error_handlers
from .rate_limit import (
    READ_LIMIT,
    STATS_LIMIT,
    WRITE_LIMIT,
    limiter,
    register_rate_limit,
)

load_dotenv()
API_PORT = int(os.getenv("API_PORT", "3000"))
API_PREFIX = os.getenv("API_PREFIX", "/api").rstrip("/")
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]
API_VERSION = "1.0.0"

logger = logging.getLogger("api")
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(handler)

STARTED_AT = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info(f"Library Management API ready on port {API_PORT}, base {API_PREFIX}")
    yield
    close_client()


app = FastAPI(title="Library Management API", version=API_VERSION, lifespan=lifespan)

register_rate_limit(app)
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-api-key"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(f"{request.method} {request.url.path} 500 {elapsed:.1f}ms")
        raise
    elapsed = (time.perf_counter() - start) * 1000
    logger.info(f"{request.method} {request.url.path} {response.status_code} {elapsed:.1f}ms")
    return response


def format_uptime(seconds):
    days, rem = divmod(int(seconds), 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def now_iso():
    return datetime.now(timezone.utc).isoformat()


router = APIRouter(prefix=f"{API_PREFIX}/books")


def build_list_params(**kwargs):
    """Validate listing parameters as a whole (range checks) and report failures as 400."""
    try:
        return ListParams(**kwargs)
    except ValidationError as e:
        raise RequestValidationFailed(
            "Invalid query parameters", format_validation_errors(e.errors(), "query")
        ) from e


@router.get("")
@limiter.limit(READ_LIMIT)
async def list_books(
    request: Request,
    page: int = Query(1),
    limit: int = Query(DEFAULT_LIMIT),
    sort: str = Query(DEFAULT_SORT),
    search: Optional[str] = Query(None),
    genre: Optional[str] = Query(None),
    year: Optional[int] = Query(None),
    min_year: Optional[int] = Query(None, alias="minYear"),
    max_year: Optional[int] = Query(None, alias="maxYear"),
    author: Optional[str] = Query(None),
    available: Optional[Literal["true", "false"]] = Query(None),
    rating: Optional[float] = Query(None),
    min_rating: Optional[float] = Query(None, alias="minRating"),
    max_rating: Optional[float] = Query(None, alias="maxRating"),
    language: Optional[str] = Query(None),
    publisher: Optional[str] = Query(None),
):
    """
    List books with optional filtering, searching, sorting and pagination.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        page (int): Page number; values below 1 are treated as 1
        limit (int): Page size, clamped to 1-100. Defaults to 10
        sort (str): Comma-separated fields, '-' prefix for descending.
            Defaults to '-createdAt'
        search (str, optional): Substring of title, author, description or a tag
        genre, author, language, publisher (str, optional): Case-insensitive
            substring filters
        year (int, optional): Exact year; ignored when minYear/maxYear is given
        minYear, maxYear (int, optional): Inclusive year bounds
        available (str, optional): 'true' or 'false'
        rating (float, optional): Exact rating; ignored when minRating/maxRating is given
        minRating, maxRating (float, optional): Inclusive rating bounds

    Returns:
        dict: success, count, page, limit, pages, hasNextPage, hasPrevPage,
            nextPage, prevPage, data

    Rate Limit:
        RATE_LIMIT_DEFAULT per client (100 per 15 minutes by default)

    Note:
        Non-numeric page/limit/year/rating values, years outside
        1000 to the current year and ratings outside 0-5 are rejected with
        400 naming the offending parameter.
    """
    params = build_list_params(
        page=page,
        limit=limit,
        sort=sort,
        search=search,
        genre=genre,
        year=year,
        minYear=min_year,
        maxYear=max_year,
        author=author,
        available=available,
        rating=rating,
        minRating=min_rating,
        maxRating=max_rating,
        language=language,
        publisher=publisher,
    )
    db = get_db()
    result = await books.list_books(db, params)
    return {"success": True, **result}


@router.post("", status_code=201)
@limiter.limit(WRITE_LIMIT)
async def create_book(request: Request, payload: BookCreate):
    """
    Create a new book.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        payload (BookCreate): title, author and year are required

    Returns:
        dict: success, message and the created book under `data`

    Raises:
        400: Invalid fields (all of them listed) or duplicate ISBN
    """
    db = get_db()
    book = await books.create_book(db, payload)
    return {"success": True, "message": "Book created successfully", "data": book}


@router.get("/stats")
@limiter.limit(STATS_LIMIT)
async def book_stats(request: Request):
    """Collection-wide counts and averages plus the genre distribution."""
    db = get_db()
    stats = await books.book_stats(db)
    return {"success": True, "data": stats}


@router.get("/genre/{genre}")
@limiter.limit(READ_LIMIT)
async def books_by_genre(
    request: Request,
    genre: str,
    page: int = Query(1),
    limit: int = Query(DEFAULT_LIMIT),
):
    """Books whose genre contains `genre` (case-insensitive), by title, at most 50 per page."""
    db = get_db()
    result = await books.books_by_genre(db, genre, page, limit)
    return {"success": True, **result}


@router.get("/author/{author}")
@limiter.limit(READ_LIMIT)
async def books_by_author(
    request: Request,
    author: str,
    page: int = Query(1),
    limit: int = Query(DEFAULT_LIMIT),
):
    """Books whose author contains `author` (case-insensitive), newest first, at most 50 per page."""
    db = get_db()
    result = await books.books_by_author(db, author, page, limit)
    return {"success": True, **result}


@router.get("/{book_id}")
@limiter.limit(READ_LIMIT)
async def get_book(request: Request, book_id: str):
    """
    Retrieve a single book by its identifier.

    Raises:
        400: Malformed identifier
        404: No book with that identifier
    """
    db = get_db()
    book = await books.get_book(db, book_id)
    return {"success": True, "data": book}


@router.put("/{book_id}")
@limiter.limit(WRITE_LIMIT)
async def update_book(request: Request, book_id: str, payload: BookUpdate):
    """
    Partially update a book.

    Only the fields present in the body change. Optional fields sent as
    null are removed; title, author, year, available and language cannot
    be null.
    """
    db = get_db()
    book = await books.update_book(db, book_id, payload)
    return {"success": True, "message": "Book updated successfully", "data": book}


@router.delete("/{book_id}")
@limiter.limit(WRITE_LIMIT)
async def delete_book(request: Request, book_id: str):
    db = get_db()
    await books.delete_book(db, book_id)
    return {"success": True, "message": "Book deleted successfully", "data": {}}


@router.patch("/{book_id}/toggle-availability")
@limiter.limit(WRITE_LIMIT)
async def toggle_availability(request: Request, book_id: str):
    db = get_db()
    book = await books.toggle_availability(db, book_id)
    state = "available" if book["available"] else "unavailable"
    return {
        "success": True,
        "message": f"Book availability toggled to {state}",
        "data": book,
    }


@router.patch("/{book_id}/tags")
@limiter.limit(WRITE_LIMIT)
async def add_tag(request: Request, book_id: str, payload: TagIn = Body(...)):
    """Add one tag (trimmed, lowercased). Adding a tag the book already has changes nothing."""
    db = get_db()
    book = await books.add_tag(db, book_id, payload.tag)
    return {"success": True, "message": "Tag added successfully", "data": book}


@router.delete("/{book_id}/tags")
@limiter.limit(WRITE_LIMIT)
async def remove_tag(request: Request, book_id: str, payload: TagIn = Body(...)):
    db = get_db()
    book = await books.remove_tag(db, book_id, payload.tag)
    return {"success": True, "message": "Tag removed successfully", "data": book}


app.include_router(router)


@app.get(f"{API_PREFIX}/health")
@limiter.limit(READ_LIMIT)
async def health(request: Request):
    """
    Report API and database health.

    Returns:
        dict: success, message, timestamp, uptime, database status
            (state, host, port, database) and api info (version, prefix)

    Note:
        Always answers 200; a database that does not answer a ping is
        reported as 'disconnected'.
    """
    db = get_db()
    uptime = time.monotonic() - STARTED_AT
    return {
        "success": True,
        "message": "Library Management API is running smoothly",
        "timestamp": now_iso(),
        "uptime": {"seconds": round(uptime, 3), "human": format_uptime(uptime)},
        "database": await connection_status(db),
        "api": {"version": API_VERSION, "prefix": API_PREFIX},
    }


@app.get(f"{API_PREFIX}/status")
async def status():
    return {
        "success": True,
        "status": "active",
        "timestamp": now_iso(),
        "uptime": format_uptime(time.monotonic() - STARTED_AT),
    }


@app.get("/")
async def root():
    return {
        "success": True,
        "message": "Welcome to Library Management API",
        "version": API_VERSION,
        "timestamp": now_iso(),
        "documentation": {
            "health": f"{API_PREFIX}/health",
            "books": f"{API_PREFIX}/books",
        },
    }


# Run uvicorn externally or here
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=API_PORT, reload=True)
