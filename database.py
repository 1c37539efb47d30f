"""
Database Helpers

MongoDB connection and small helpers shared by the API. The connection is
configured from the environment:

- DATABASE_URL  -> MongoDB connection string
- DATABASE_NAME -> database to use

When either is missing, `db` stays None and every data endpoint fails.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]
else:
    logger.warning("database_disabled", reason="DATABASE_URL or DATABASE_NAME not set")


def _require_db():
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id as a string."""
    database = _require_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now_utc()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
) -> List[Dict[str, Any]]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    return list(cursor)


def ensure_indexes():
    """Unique indexes backing the email, category-name and one-review-per-user rules."""
    database = _require_db()
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["category"].create_index([("name", ASCENDING)], unique=True)
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["review"].create_index(
        [("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )
