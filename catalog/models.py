# catalog/models.py
from datetime import datetime, timezone
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .mutations import normalize_tags

GENRES = [
    "Fiction",
    "Non-Fiction",
    "Mystery",
    "Romance",
    "Science Fiction",
    "Fantasy",
    "Biography",
    "History",
    "Science",
    "Technology",
    "Philosophy",
    "Religion",
    "Self-Help",
    "Business",
    "Education",
    "Children",
    "Young Adult",
    "Classic Literature",
    "Poetry",
    "Drama",
    "Cookbook",
    "Travel",
    "Art",
    "Music",
    "Sports",
    "Health",
    "Politics",
    "Economics",
    "Psychology",
    "Sociology",
    "Other",
]
_GENRE_LOOKUP = {g.lower(): g for g in GENRES}

# ISBN-10 / ISBN-13, bare digits or hyphenated groups
ISBN_PATTERN = (
    r"^(?:\d{9}[\dX]|\d{13}|\d{1,5}-\d{1,7}-\d{1,7}-[\dX]"
    r"|\d{1,5}-\d{1,7}-\d{1,7}-\d{1,7}-\d{1,7})$"
)

MIN_YEAR = 1000
MAX_TAG_LENGTH = 30

Tag = Annotated[str, Field(max_length=MAX_TAG_LENGTH)]


def current_year():
    return datetime.now(timezone.utc).year


class BookBase(BaseModel):
    """
    Shared configuration and field rules for every book schema.

    Strings are trimmed before length checks, unknown keys are dropped and
    camelCase aliases (addedBy, createdAt, ...) are accepted alongside the
    Python attribute names.
    """

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    @field_validator("year", check_fields=False)
    @classmethod
    def year_not_in_future(cls, v):
        if v is not None and v > current_year():
            raise ValueError(f"Year cannot exceed {current_year()}")
        return v

    @field_validator("isbn", "genre", "description", "publisher", mode="before", check_fields=False)
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("genre", check_fields=False)
    @classmethod
    def canonical_genre(cls, v):
        if v is None:
            return v
        try:
            return _GENRE_LOOKUP[v.lower()]
        except KeyError:
            raise ValueError("Genre must be one of the predefined categories") from None

    @field_validator("tags", check_fields=False)
    @classmethod
    def clean_tags(cls, v):
        if v is None:
            return v
        return normalize_tags(v)


class BookCreate(BookBase):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=100)
    year: int = Field(..., ge=MIN_YEAR)
    isbn: Optional[str] = Field(None, pattern=ISBN_PATTERN)
    genre: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    available: bool = True
    pages: Optional[int] = Field(None, ge=1, le=10000)
    publisher: Optional[str] = Field(None, max_length=100)
    language: str = Field("English", max_length=50)
    rating: Optional[float] = Field(None, ge=0, le=5)
    tags: List[Tag] = Field(default_factory=list)
    added_by: str = Field("system", alias="addedBy", max_length=50)

    def to_document(self):
        """Store representation: camelCase keys, absent optionals omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


class BookRecord(BookCreate):
    """A stored book as loaded from the collection, used to re-validate after mutators."""

    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")
    last_modified: Optional[datetime] = Field(None, alias="lastModified")


# fields that must keep a value once a book exists
_NOT_NULLABLE = ("title", "author", "year", "available", "language")


class BookUpdate(BookBase):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=100)
    year: Optional[int] = Field(None, ge=MIN_YEAR)
    isbn: Optional[str] = Field(None, pattern=ISBN_PATTERN)
    genre: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    available: Optional[bool] = None
    pages: Optional[int] = Field(None, ge=1, le=10000)
    publisher: Optional[str] = Field(None, max_length=100)
    language: Optional[str] = Field(None, max_length=50)
    rating: Optional[float] = Field(None, ge=0, le=5)
    tags: Optional[List[Tag]] = None

    @model_validator(mode="after")
    def check_fields_present(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        nulled = [n for n in _NOT_NULLABLE if n in self.model_fields_set and getattr(self, n) is None]
        if nulled:
            raise ValueError(f"{', '.join(nulled)} cannot be null")
        return self

    def to_update(self):
        """
        Split the supplied fields into a Mongo $set/$unset pair.

        Fields left out of the request are untouched; optional fields sent
        as null are removed from the document.

        Returns:
            tuple[dict, dict]: (fields to set, fields to unset)
        """
        sent = self.model_dump(by_alias=True, exclude_unset=True)
        to_set = {k: v for k, v in sent.items() if v is not None}
        to_unset = {k: "" for k, v in sent.items() if v is None}
        return to_set, to_unset


class TagIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    tag: str = Field(..., min_length=1, max_length=MAX_TAG_LENGTH)
