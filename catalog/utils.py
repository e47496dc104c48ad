# catalog/utils.py
from datetime import datetime, timezone

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from .errors import RequestValidationFailed


def utcnow():
    return datetime.now(timezone.utc)


def parse_object_id(value):
    """
    Convert a path identifier into a bson ObjectId.

    Args:
        value (str): 24-character hex identifier from the request path

    Returns:
        ObjectId: Parsed identifier

    Raises:
        RequestValidationFailed: If the value is not a valid ObjectId
    """
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise RequestValidationFailed(
            "Invalid resource ID format",
            [{"field": "id", "message": f"'{value}' is not a valid identifier"}],
        ) from None


def serialize_book(doc):
    """
    Transform a MongoDB book document into an API response dictionary.

    Converts the ObjectId to its string form and adds the read-only
    derived fields clients rely on.

    Args:
        doc (dict): Book document as stored in the books collection

    Returns:
        dict: Copy of the document with:
            - _id / id: string identifier
            - age: years since publication
            - fullInfo: "<title> by <author> (<year>)"
            - status: "Available" or "Checked Out"

    Note:
        The input document is not modified.
    """
    out = dict(doc)
    out["_id"] = str(out["_id"])
    out["id"] = out["_id"]
    year = out.get("year")
    out["age"] = utcnow().year - year if year is not None else None
    out["fullInfo"] = f"{out.get('title')} by {out.get('author')} ({year})"
    out["status"] = "Available" if out.get("available", True) else "Checked Out"
    return out


def startup_retry(**tenacity_kwargs):
    """
    Create a tenacity retry decorator for store calls made while starting up.

    Request handlers never retry; this is only used to wait for the
    database to come up before the API starts serving.

    Args:
        **tenacity_kwargs: Optional keyword arguments
            - attempts (int): Maximum number of attempts. Defaults to 3.

    Returns:
        tenacity.Retrying: Configured retry decorator

    Retry Behavior:
        - Stops after the configured number of attempts
        - Exponential backoff: min=1s, max=10s, multiplier=1
        - Retries on PyMongoError only and re-raises the last error
    """
    return retry(
        stop=stop_after_attempt(tenacity_kwargs.get("attempts", 3)),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(PyMongoError),
        reraise=True,
    )
