"""
MongoDB access for EduSync.

The connection is configured from the environment (DATABASE_URL and
DATABASE_NAME). When either is missing, `db` stays None and routes that need
storage answer with a 500 instead of crashing at import time.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple

from bson import ObjectId
from dotenv import load_dotenv
from pymongo import MongoClient

from errors import InvalidInput, InternalError

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

USERS = "users"
SESSIONS = "study-sessions"
REVIEWS = "reviews"
BOOKINGS = "booked-sessions"
MATERIALS = "session-materials"
NOTES = "student-notes"

db = None

if DATABASE_URL and DATABASE_NAME:
    try:
        client = MongoClient(DATABASE_URL)
        db = client[DATABASE_NAME]
    except Exception:
        logger.exception("Could not create Mongo client for %s", DATABASE_NAME)
        db = None


def get_db():
    if db is None:
        raise InternalError("Database not configured")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except Exception:
        raise InvalidInput("Invalid id format")


def is_valid_oid(value: Any) -> bool:
    return isinstance(value, (str, ObjectId)) and ObjectId.is_valid(value)


def create_document(database, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert `data` stamped with createdAt/updatedAt and return the new id."""
    doc = dict(data)
    stamp = now_utc()
    doc.setdefault("createdAt", stamp)
    doc.setdefault("updatedAt", stamp)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    skip: int = 0,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(int(skip))
    if limit:
        cursor = cursor.limit(int(limit))
    return list(cursor)


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return {k: _plain(v) for k, v in d.items()}
