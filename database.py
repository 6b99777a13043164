"""
MongoDB access for the Civic Triage API.

The module-level ``db`` is None when DATABASE_URL / DATABASE_NAME are unset;
routes get the handle through the ``get_db`` dependency so tests can swap in
another pymongo-compatible database.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient
from pymongo.errors import PyMongoError

log = structlog.get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if isinstance(data, BaseModel):
        data = data.model_dump()
    now = datetime.now(timezone.utc)
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(int(limit))
    return list(cursor)


def ensure_indexes(database) -> None:
    try:
        database.report.create_index([("department", ASCENDING), ("status", ASCENDING)])
        database.report.create_index([("created_at", DESCENDING)])
        database.report.create_index([("location", GEOSPHERE)])
        database.transferlog.create_index([("report_id", ASCENDING), ("status", ASCENDING)])
        database.notification.create_index([("user_id", ASCENDING), ("read", ASCENDING), ("created_at", DESCENDING)])
        database.user.create_index("email", unique=True)
        database.user.create_index([("role", ASCENDING), ("department", ASCENDING)])
    except PyMongoError as e:
        log.warning("index_creation_failed", error=str(e))
