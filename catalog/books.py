# catalog/books.py
import logging

from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import (
    ConflictError,
    NotFoundError,
    RequestValidationFailed,
    format_validation_errors,
)
from .models import BookCreate, BookRecord, BookUpdate
from .mutations import add_tag as add_tag_to, remove_tag as remove_tag_from
from .mutations import toggle_availability as toggle
from .query import (
    DEFAULT_LIMIT,
    ListParams,
    build_filter,
    contains,
    page_meta,
    paginate,
    parse_sort,
)
from .utils import parse_object_id, serialize_book, utcnow

logger = logging.getLogger("catalog.books")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
logger.addHandler(handler)

BY_FIELD_MAX_LIMIT = 50

STATS_PIPELINE = [
    {
        "$group": {
            "_id": None,
            "totalBooks": {"$sum": 1},
            "availableBooks": {"$sum": {"$cond": [{"$eq": ["$available", True]}, 1, 0]}},
            "checkedOutBooks": {"$sum": {"$cond": [{"$eq": ["$available", False]}, 1, 0]}},
            "avgRating": {"$avg": "$rating"},
            "oldestBook": {"$min": "$year"},
            "newestBook": {"$max": "$year"},
            "avgPages": {"$avg": "$pages"},
        }
    }
]

GENRE_PIPELINE = [
    {"$group": {"_id": "$genre", "count": {"$sum": 1}}},
    {"$sort": {"count": -1}},
]

EMPTY_STATS = {
    "totalBooks": 0,
    "availableBooks": 0,
    "checkedOutBooks": 0,
    "avgRating": 0,
    "oldestBook": None,
    "newestBook": None,
    "avgPages": 0,
}


def _conflict(err: DuplicateKeyError):
    key_value = (err.details or {}).get("keyValue") or {}
    if key_value:
        field, value = next(iter(key_value.items()))
        return ConflictError(f"{field.capitalize()} '{value}' already exists")
    return ConflictError("Duplicate value for a unique field")


async def _find_or_404(db, oid):
    doc = await db.books.find_one({"_id": oid})
    if doc is None:
        raise NotFoundError("Book not found")
    return doc


async def fetch_page(db, filter_, sort, page):
    """
    Count and fetch one page of books for a filter.

    Args:
        db: Motor database handle
        filter_ (dict): Mongo filter applied to both count and fetch
        sort (list[tuple]): (field, direction) pairs
        page (Page): Clamped page, limit and skip

    Returns:
        dict: Pagination metadata plus `data`, the serialized books
    """
    total = await db.books.count_documents(filter_)
    cursor = db.books.find(filter_).sort(sort).skip(page.skip).limit(page.limit)
    docs = await cursor.to_list(length=page.limit)
    return {**page_meta(total, page), "data": [serialize_book(d) for d in docs]}


async def list_books(db, params: ListParams):
    """
    List books matching optional filters, sorted and paginated.

    Args:
        db: Motor database handle
        params (ListParams): Parsed listing parameters

    Returns:
        dict: count, page, limit, pages, hasNextPage, hasPrevPage,
            nextPage, prevPage and data

    Note:
        `count` is the number of books matching the filter, independent
        of pagination. Out-of-range page/limit values are clamped.
    """
    filter_ = build_filter(params)
    sort = parse_sort(params.sort)
    page = paginate(params.page, params.limit)
    return await fetch_page(db, filter_, sort, page)


async def list_by_field(db, field, value, page=1, limit=DEFAULT_LIMIT, sort=None):
    """Paginated listing for a single case-insensitive substring filter, capped at 50 per page."""
    page = paginate(page, limit, max_limit=BY_FIELD_MAX_LIMIT)
    result = await fetch_page(db, {field: contains(value)}, parse_sort(sort), page)
    result[field] = value
    return result


async def books_by_genre(db, genre, page=1, limit=DEFAULT_LIMIT):
    return await list_by_field(db, "genre", genre, page, limit, sort="title")


async def books_by_author(db, author, page=1, limit=DEFAULT_LIMIT):
    return await list_by_field(db, "author", author, page, limit, sort="-year")


async def get_book(db, book_id):
    doc = await _find_or_404(db, parse_object_id(book_id))
    return serialize_book(doc)


async def create_book(db, payload: BookCreate):
    """
    Insert a new book and return it serialized.

    Raises:
        ConflictError: If another book already has the same ISBN
    """
    now = utcnow()
    doc = {**payload.to_document(), "createdAt": now, "updatedAt": now, "lastModified": now}
    try:
        res = await db.books.insert_one(doc)
    except DuplicateKeyError as e:
        raise _conflict(e) from e
    doc["_id"] = res.inserted_id
    logger.info(f"Created book {doc['_id']} ({doc['title']})")
    return serialize_book(doc)


async def update_book(db, book_id, payload: BookUpdate):
    """
    Apply a partial update to a book.

    Fields missing from the payload are left untouched; optional fields
    sent as null are removed. Timestamps are refreshed on every update.

    Raises:
        RequestValidationFailed: Malformed identifier
        NotFoundError: No book with that identifier
        ConflictError: The new ISBN belongs to another book
    """
    oid = parse_object_id(book_id)
    to_set, to_unset = payload.to_update()
    now = utcnow()
    update = {"$set": {**to_set, "updatedAt": now, "lastModified": now}}
    if to_unset:
        update["$unset"] = to_unset
    try:
        doc = await db.books.find_one_and_update(
            {"_id": oid}, update, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError as e:
        raise _conflict(e) from e
    if doc is None:
        raise NotFoundError("Book not found")
    logger.info(f"Updated book {oid}: {sorted(to_set) + sorted(to_unset)}")
    return serialize_book(doc)


async def delete_book(db, book_id):
    oid = parse_object_id(book_id)
    doc = await db.books.find_one_and_delete({"_id": oid})
    if doc is None:
        raise NotFoundError("Book not found")
    logger.info(f"Deleted book {oid}")
    return serialize_book(doc)


async def _mutate(db, book_id, transform):
    """
    Load a book, apply a pure transformation, re-validate and persist it.

    The whole record is validated against BookRecord after the change and
    written back with a single replace_one. A book deleted in between
    is reported as not found.
    """
    oid = parse_object_id(book_id)
    doc = await _find_or_404(db, oid)
    changed = transform(doc)
    try:
        record = BookRecord.model_validate(changed)
    except ValidationError as e:
        raise RequestValidationFailed(errors=format_validation_errors(e.errors())) from e
    now = utcnow()
    new_doc = {"_id": oid, **record.to_document(), "updatedAt": now, "lastModified": now}
    res = await db.books.replace_one({"_id": oid}, new_doc)
    if res.matched_count == 0:
        raise NotFoundError("Book not found")
    return serialize_book(new_doc)


async def toggle_availability(db, book_id):
    return await _mutate(db, book_id, toggle)


async def add_tag(db, book_id, tag):
    return await _mutate(db, book_id, lambda doc: add_tag_to(doc, tag))


async def remove_tag(db, book_id, tag):
    return await _mutate(db, book_id, lambda doc: remove_tag_from(doc, tag))


async def book_stats(db):
    """
    Aggregate collection-wide statistics.

    Returns:
        dict:
            - general: totalBooks, availableBooks, checkedOutBooks,
              avgRating, oldestBook, newestBook, avgPages
            - genreDistribution: [{"_id": genre, "count": n}], most
              common genre first

    Note:
        An empty collection yields zero counts and null year bounds.
    """
    general = await db.books.aggregate(STATS_PIPELINE).to_list(length=1)
    genres = await db.books.aggregate(GENRE_PIPELINE).to_list(length=None)
    if general:
        summary = {k: v for k, v in general[0].items() if k != "_id"}
    else:
        summary = dict(EMPTY_STATS)
    return {"general": summary, "genreDistribution": genres}
