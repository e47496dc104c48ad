# catalog/db.py
import logging
import os
from urllib.parse import urlparse

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from .utils import startup_retry

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "library_management")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))
STARTUP_ATTEMPTS = int(os.getenv("MONGO_STARTUP_ATTEMPTS", "3"))

logger = logging.getLogger("catalog.db")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
logger.addHandler(handler)

_client = None
_db = None

# (keys, options) pairs for the books collection
BOOK_INDEXES = [
    ([("isbn", ASCENDING)], {"unique": True, "sparse": True}),
    ([("title", ASCENDING)], {}),
    ([("author", ASCENDING)], {}),
    ([("year", ASCENDING)], {}),
    ([("genre", ASCENDING)], {}),
    ([("available", ASCENDING)], {}),
    ([("title", ASCENDING), ("author", ASCENDING)], {}),
    ([("genre", ASCENDING), ("year", ASCENDING)], {}),
    ([("available", ASCENDING), ("genre", ASCENDING)], {}),
]


def get_client():
    """Initialize and return the MongoDB AsyncIOMotorClient singleton."""
    global _client, _db
    if _client is None:
        _client = AsyncIOMotorClient(
            MONGO_URI,
            serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
            maxPoolSize=10,
            tz_aware=True,
        )
        _db = _client[MONGO_DB]
    return _client


def get_db():
    """Return the MongoDB database instance, initializing if needed."""
    global _db
    if _db is None:
        get_client()
    return _db


def close_client():
    """Close the client singleton so the next get_db() reconnects."""
    global _client, _db
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
    _db = None


def host_info():
    """Host and port of the first server in MONGO_URI, without credentials."""
    parsed = urlparse(MONGO_URI)
    try:
        return parsed.hostname, parsed.port or 27017
    except ValueError:
        # multi-host seed lists do not parse as a single netloc
        return parsed.netloc.rpartition("@")[2], None


async def ping(db=None):
    db = db if db is not None else get_db()
    await db.command("ping")


async def ensure_indexes(db=None):
    """Create the books collection indexes; existing indexes are left alone."""
    db = db if db is not None else get_db()
    for keys, options in BOOK_INDEXES:
        await db.books.create_index(keys, **options)
    logger.info(f"Ensured {len(BOOK_INDEXES)} indexes on {db.name}.books")


@startup_retry(attempts=STARTUP_ATTEMPTS)
async def init_db(db=None):
    """
    Wait for the database and prepare the books collection.

    Called once from the application lifespan. Retries with backoff while
    the server is unreachable and re-raises the last error when it never
    comes up.

    Args:
        db: Database handle. Defaults to get_db()
    """
    db = db if db is not None else get_db()
    await ping(db)
    host, port = host_info()
    logger.info(f"MongoDB connected: {host}:{port}/{db.name}")
    await ensure_indexes(db)


async def connection_status(db=None):
    """
    Report whether the database answers a ping.

    Returns:
        dict: state ('connected' | 'disconnected'), host, port and database
    """
    db = db if db is not None else get_db()
    host, port = host_info()
    try:
        await ping(db)
        state = "connected"
    except PyMongoError as e:
        logger.warning(f"Database ping failed: {e}")
        state = "disconnected"
    return {
        "state": state,
        "host": host,
        "port": port,
        "database": db.name,
    }
