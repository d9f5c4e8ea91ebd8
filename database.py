"""
MongoDB access.

``db`` is the shared database handle. Routes receive it through the ``get_db``
dependency so tests can swap in another database.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, MongoClient
from pymongo.errors import (
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from config import settings
from errors import StorageError, StorageTimeout

logger = logging.getLogger(__name__)

TIMEOUT_ERRORS = (ExecutionTimeout, NetworkTimeout, ServerSelectionTimeoutError, WTimeoutError)

client = MongoClient(
    settings.database_url,
    serverSelectionTimeoutMS=settings.mongo_server_selection_timeout_ms,
    connectTimeoutMS=settings.mongo_connect_timeout_ms,
    socketTimeoutMS=settings.mongo_socket_timeout_ms,
)
db = client[settings.database_name]


def get_db():
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database, collection_name: str, data: Dict[str, Any]) -> str:
    doc = dict(data)
    doc.setdefault("createdAt", utcnow())
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, sort_field: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort_field:
        cursor = cursor.sort(sort_field, -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def id_str(value) -> Optional[str]:
    """String form of a stored id; accepts ObjectId, str or extended JSON ``{"$oid": ...}``."""
    if value is None or value == "":
        return None
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict) and isinstance(value.get("$oid"), str):
        return value["$oid"]
    return str(value)


def to_datetime(value) -> datetime:
    """Normalize a stored timestamp to an aware UTC datetime; falls back to now."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return utcnow()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utcnow()


@contextmanager
def storage_errors(message: str):
    """Translate driver failures raised inside the block into StorageError/StorageTimeout."""
    try:
        yield
    except TIMEOUT_ERRORS as exc:
        logger.error("%s: %s", message, exc)
        raise StorageTimeout(message) from exc
    except PyMongoError as exc:
        logger.error("%s: %s", message, exc)
        raise StorageError(message) from exc


def ensure_indexes(database) -> None:
    try:
        database["conversations"].create_index(
            [("property", ASCENDING), ("buyer", ASCENDING), ("seller", ASCENDING)],
            unique=True,
            name="conversation_triple",
            # Threads that are not about a property are outside the triple.
            partialFilterExpression={
                "property": {"$exists": True},
                "buyer": {"$exists": True},
                "seller": {"$exists": True},
            },
        )
        database["messages"].create_index([("conversationId", ASCENDING), ("createdAt", ASCENDING)])
    except PyMongoError as exc:
        # Existing duplicate threads block the unique index; replies still work without it.
        logger.warning("Could not create conversation indexes: %s", exc)
