# tests/conftest.py
import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

import re
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from api.main import app
from api.rate_limit import limiter


def _matches_value(docv, cond):
    """Evaluate one field condition (operator dict or literal) against a value."""
    if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$regex":
                flags = re.I if "i" in cond.get("$options", "") else 0
                values = docv if isinstance(docv, list) else [docv]
                if not any(isinstance(v, str) and re.search(arg, v, flags) for v in values):
                    return False
            elif op == "$options":
                continue
            elif op == "$gte":
                if docv is None or docv < arg:
                    return False
            elif op == "$lte":
                if docv is None or docv > arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    if isinstance(docv, list) and not isinstance(cond, list):
        return cond in docv
    return docv == cond


def matches(doc, q):
    """
    Evaluate a Mongo-style filter against an in-memory document.

    Supports the subset the service layer emits: $and, $or, equality,
    $regex/$options (also against array elements), $gte and $lte.
    Missing fields fail range and regex conditions.
    """
    for k, v in (q or {}).items():
        if k == "$and":
            if not all(matches(doc, sub) for sub in v):
                return False
        elif k == "$or":
            if not any(matches(doc, sub) for sub in v):
                return False
        elif not _matches_value(doc.get(k), v):
            return False
    return True


def _sort_key(field):
    # Mongo orders missing/null before any value
    return lambda d: (d.get(field) is not None, d.get(field))


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = list(docs)
        self._skip = 0
        self._limit = None

    def sort(self, order):
        """
        Sort the documents by a list of (field, direction) pairs.

        Applies stable sorts from the last key to the first so the first
        pair is the primary key, like a Mongo compound sort.
        """
        for field, direction in reversed(order):
            self._docs.sort(key=_sort_key(field), reverse=(direction < 0))
        return self

    def skip(self, n: int):
        self._skip = n
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    async def to_list(self, length=None):
        """
        Return copies of the documents after skip() and limit().

        `length` caps the result further when given, as Motor does.
        """
        start = self._skip
        end = None if self._limit is None else start + self._limit
        docs = [dict(d) for d in self._docs[start:end]]
        return docs if length is None else docs[:length]


def _eval(doc, expr):
    """Evaluate the aggregation expressions used by the stats pipeline."""
    if isinstance(expr, str) and expr.startswith("$"):
        return doc.get(expr[1:])
    if isinstance(expr, dict) and "$cond" in expr:
        cond, then, other = expr["$cond"]
        return _eval(doc, then) if _eval(doc, cond) else _eval(doc, other)
    if isinstance(expr, dict) and "$eq" in expr:
        a, b = expr["$eq"]
        return _eval(doc, a) == _eval(doc, b)
    return expr


def _accumulate(docs, spec):
    (op, expr), = spec.items()
    if op == "$sum":
        return sum(_eval(d, expr) or 0 for d in docs)
    values = [_eval(d, expr) for d in docs]
    values = [v for v in values if v is not None]
    if op == "$avg":
        return sum(values) / len(values) if values else None
    if op == "$min":
        return min(values) if values else None
    if op == "$max":
        return max(values) if values else None
    raise NotImplementedError(op)


class ReplaceResult:
    def __init__(self, matched_count):
        self.matched_count = matched_count
        self.modified_count = matched_count


class FakeCollection:
    def __init__(self, docs=None):
        self.docs = list(docs or [])
        self.indexes = []
        for d in self.docs:
            if "_id" not in d:
                d["_id"] = ObjectId()

    def _check_unique_isbn(self, doc, ignore_id=None):
        isbn = doc.get("isbn")
        if isbn is None:
            return
        for d in self.docs:
            if d["_id"] != ignore_id and d.get("isbn") == isbn:
                raise DuplicateKeyError(
                    "E11000 duplicate key error collection: books index: isbn_1",
                    code=11000,
                    details={"keyValue": {"isbn": isbn}},
                )

    def _index_of(self, q):
        for i, d in enumerate(self.docs):
            if matches(d, q):
                return i
        return None

    async def find_one(self, q=None):
        i = self._index_of(q)
        return None if i is None else dict(self.docs[i])

    def find(self, q=None):
        return FakeCursor([d for d in self.docs if matches(d, q)])

    async def count_documents(self, q=None):
        return sum(1 for d in self.docs if matches(d, q))

    async def insert_one(self, doc):
        """
        Insert a copy of `doc`, assigning an ObjectId when it has none.

        Raises DuplicateKeyError when another document has the same isbn,
        mirroring the unique sparse index on the real collection.
        """
        doc = dict(doc)
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        self._check_unique_isbn(doc)
        self.docs.append(doc)

        class R:
            inserted_id = doc["_id"]

        return R()

    async def find_one_and_update(self, q, u, return_document=ReturnDocument.BEFORE):
        """Apply $set/$unset to the first match; only the operators the service uses."""
        i = self._index_of(q)
        if i is None:
            return None
        before = self.docs[i]
        after = dict(before)
        after.update(u.get("$set", {}))
        for k in u.get("$unset", {}):
            after.pop(k, None)
        self._check_unique_isbn(after, ignore_id=before["_id"])
        self.docs[i] = after
        return dict(after if return_document == ReturnDocument.AFTER else before)

    async def replace_one(self, q, doc):
        i = self._index_of(q)
        if i is None:
            return ReplaceResult(0)
        self._check_unique_isbn(doc, ignore_id=self.docs[i]["_id"])
        self.docs[i] = dict(doc)
        return ReplaceResult(1)

    async def find_one_and_delete(self, q):
        i = self._index_of(q)
        if i is None:
            return None
        return self.docs.pop(i)

    def aggregate(self, pipeline):
        """
        Run a pipeline of $group and $sort stages in memory.

        $group supports a null or "$field" _id with $sum, $avg, $min and
        $max accumulators; $cond/$eq expressions are evaluated.
        """
        rows = [dict(d) for d in self.docs]
        for stage in pipeline:
            (name, spec), = stage.items()
            if name == "$group":
                groups = {}
                for d in rows:
                    groups.setdefault(_eval(d, spec["_id"]), []).append(d)
                rows = []
                for key, members in groups.items():
                    row = {"_id": key}
                    for out, acc in spec.items():
                        if out != "_id":
                            row[out] = _accumulate(members, acc)
                    rows.append(row)
            elif name == "$sort":
                rows = FakeCursor(rows).sort(list(spec.items()))._docs
            else:
                raise NotImplementedError(name)
        return FakeCursor(rows)

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return "_".join(f"{k}_{d}" for k, d in keys)


class FakeDB:
    name = "library_management_test"

    def __init__(self, books=None):
        self.books = FakeCollection(books or [])
        self.commands = []

    async def command(self, name):
        self.commands.append(name)
        return {"ok": 1.0}


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_book(title, author, year, minutes=0, **fields):
    """A stored book document as create_book would have written it."""
    created = BASE_TIME + timedelta(minutes=minutes)
    doc = {
        "_id": ObjectId(),
        "title": title,
        "author": author,
        "year": year,
        "available": True,
        "language": "English",
        "tags": [],
        "addedBy": "system",
        "createdAt": created,
        "updatedAt": created,
        "lastModified": created,
    }
    doc.update(fields)
    return doc


@pytest.fixture
def sample_books():
    """
    Sample book documents for listing, filtering and stats tests.

    Returns:
        list[dict]: Four books, created one minute apart in this order:
            - "The Great Gatsby": Fitzgerald, 1925, Classic Literature,
              rating 4.5, 180 pages, tagged "classic", "jazz age"
            - "Dune": Herbert, 1965, Science Fiction, rating 4.8, 412 pages,
              checked out
            - "Foundation": Asimov, 1951, Science Fiction, rating 4.2,
              published by Gnome Press
            - "Tender Is the Night": Fitzgerald, 1934, Fiction, no rating,
              language French

    Note:
        The default sort (-createdAt) therefore lists them newest first:
        Tender Is the Night, Foundation, Dune, The Great Gatsby.
    """
    return [
        make_book(
            "The Great Gatsby",
            "F. Scott Fitzgerald",
            1925,
            minutes=0,
            genre="Classic Literature",
            rating=4.5,
            pages=180,
            isbn="9780743273565",
            description="A story of wealth and love on Long Island",
            tags=["classic", "jazz age"],
        ),
        make_book(
            "Dune",
            "Frank Herbert",
            1965,
            minutes=1,
            genre="Science Fiction",
            rating=4.8,
            pages=412,
            available=False,
            description="Spice and sandworms on Arrakis",
        ),
        make_book(
            "Foundation",
            "Isaac Asimov",
            1951,
            minutes=2,
            genre="Science Fiction",
            rating=4.2,
            publisher="Gnome Press",
            tags=["psychohistory"],
        ),
        make_book(
            "Tender Is the Night",
            "F. Scott Fitzgerald",
            1934,
            minutes=3,
            genre="Fiction",
            language="French",
        ),
    ]


@pytest.fixture
def fake_db(sample_books):
    return FakeDB(books=sample_books)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Start every test with empty rate limit counters."""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
async def client(monkeypatch, fake_db):
    """
    Async test client wired to the in-memory fake database.

    Setup:
        - Patches api.main.get_db to return fake_db
        - Creates an AsyncClient over ASGITransport (lifespan is not run,
          so no real MongoDB connection is attempted)
    """
    monkeypatch.setattr("api.main.get_db", lambda: fake_db)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
