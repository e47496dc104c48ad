# catalog/query.py
import math
import re
from typing import NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import RequestValidationFailed
from .models import MIN_YEAR, current_year

DEFAULT_LIMIT = 10
MAX_LIMIT = 100
DEFAULT_SORT = "-createdAt"

# largest skip the server accepts (signed 64-bit)
MAX_SKIP = 2**63 - 1

# case-insensitive substring filters, applied as-is from the query string
TEXT_FILTERS = ("genre", "author", "language", "publisher")

SEARCH_FIELDS = ("title", "author", "description", "tags")

_SORT_FIELD = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


class ListParams(BaseModel):
    """Optional parameters accepted by the book listing endpoint."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    page: int = 1
    limit: int = DEFAULT_LIMIT
    sort: str = DEFAULT_SORT
    search: Optional[str] = None
    genre: Optional[str] = None
    author: Optional[str] = None
    language: Optional[str] = None
    publisher: Optional[str] = None
    year: Optional[int] = Field(None, ge=MIN_YEAR)
    min_year: Optional[int] = Field(None, alias="minYear", ge=MIN_YEAR)
    max_year: Optional[int] = Field(None, alias="maxYear", ge=MIN_YEAR)
    available: Optional[bool] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    min_rating: Optional[float] = Field(None, alias="minRating", ge=0, le=5)
    max_rating: Optional[float] = Field(None, alias="maxRating", ge=0, le=5)

    @field_validator("year", "min_year", "max_year")
    @classmethod
    def year_not_in_future(cls, v):
        if v is not None and v > current_year():
            raise ValueError(f"Year cannot exceed {current_year()}")
        return v

    @model_validator(mode="after")
    def check_ranges(self):
        if self.min_year is not None and self.max_year is not None and self.min_year > self.max_year:
            raise ValueError("Minimum year cannot be greater than maximum year")
        if self.min_rating is not None and self.max_rating is not None and self.min_rating > self.max_rating:
            raise ValueError("Minimum rating cannot be greater than maximum rating")
        return self


class Page(NamedTuple):
    page: int
    limit: int
    skip: int


def contains(value):
    """Mongo predicate matching `value` as a case-insensitive literal substring."""
    return {"$regex": re.escape(value), "$options": "i"}


def exact_or_range(exact, low, high):
    """
    Predicate for a field that has both an exact and a range filter.

    When either bound is given the range wins and the exact value is
    ignored. Returns None when nothing was supplied.
    """
    if low is not None or high is not None:
        cond = {}
        if low is not None:
            cond["$gte"] = low
        if high is not None:
            cond["$lte"] = high
        return cond
    return exact


def combine(clauses):
    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def build_filter(params: ListParams) -> dict:
    """
    Translate listing parameters into a conjunctive Mongo filter.

    Every supplied parameter contributes one clause; absent parameters
    contribute nothing, so an empty parameter set matches all books.

    Args:
        params (ListParams): Parsed query parameters

    Returns:
        dict: Mongo filter document

    Clauses:
        - search: $or over title, author, description and any tag
        - genre, author, language, publisher: case-insensitive substring
        - year / minYear / maxYear: exact year or inclusive range
        - available: exact boolean
        - rating / minRating / maxRating: exact rating or inclusive range
    """
    clauses = []

    if params.search:
        term = contains(params.search)
        clauses.append({"$or": [{f: term} for f in SEARCH_FIELDS]})

    for field in TEXT_FILTERS:
        value = getattr(params, field)
        if value:
            clauses.append({field: contains(value)})

    year = exact_or_range(params.year, params.min_year, params.max_year)
    if year is not None:
        clauses.append({"year": year})

    if params.available is not None:
        clauses.append({"available": params.available})

    rating = exact_or_range(params.rating, params.min_rating, params.max_rating)
    if rating is not None:
        clauses.append({"rating": rating})

    return combine(clauses)


def parse_sort(sort, default=DEFAULT_SORT):
    """
    Parse a comma-separated sort expression into Mongo sort pairs.

    A leading '-' sorts that field descending. Blank segments are skipped
    and an empty expression falls back to `default`. `_id` is appended as a
    final ascending key so equal values page deterministically.

    Args:
        sort (str): e.g. "-year,title"
        default (str): Expression used when `sort` has no fields

    Returns:
        list[tuple[str, int]]: (field, 1 | -1) pairs, primary key first

    Raises:
        RequestValidationFailed: If a field name is not a plain field path
    """
    pairs = []
    for part in (sort or "").split(","):
        part = part.strip()
        if not part:
            continue
        direction = 1
        if part.startswith("-"):
            direction = -1
            part = part[1:]
        elif part.startswith("+"):
            part = part[1:]
        if not _SORT_FIELD.match(part):
            raise RequestValidationFailed(
                "Invalid query parameters",
                [{"field": "sort", "message": f"Invalid sort field '{part}'"}],
            )
        if part == "id":
            part = "_id"
        if part not in (f for f, _ in pairs):
            pairs.append((part, direction))

    if not pairs:
        return parse_sort(default, default=None) if default else [("_id", 1)]
    if all(f != "_id" for f, _ in pairs):
        pairs.append(("_id", 1))
    return pairs


def paginate(page, limit, max_limit=MAX_LIMIT):
    """Clamp page/limit into range and compute the number of documents to skip."""
    limit = min(max_limit, max(1, limit))
    page = min(max(1, page), MAX_SKIP // limit + 1)
    return Page(page=page, limit=limit, skip=(page - 1) * limit)


def page_meta(total, page: Page):
    pages = math.ceil(total / page.limit)
    has_next = page.page < pages
    has_prev = page.page > 1
    return {
        "count": total,
        "page": page.page,
        "limit": page.limit,
        "pages": pages,
        "hasNextPage": has_next,
        "hasPrevPage": has_prev,
        "nextPage": page.page + 1 if has_next else None,
        "prevPage": page.page - 1 if has_prev else None,
    }
