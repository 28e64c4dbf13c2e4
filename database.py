"""
MongoDB connection and small document helpers shared by the routes.

`db` is None when DATABASE_URL is not configured; routes check for that
and answer with a 500 instead of crashing on import.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "Ekoseller")

client = None
db = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes that are already UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def oid(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid ID")
    return ObjectId(id_str)


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("phone", ASCENDING)], unique=True)
    database["userotpverification"].create_index([("email", ASCENDING)], unique=True)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    """Insert a document and return its id as a string.

    `dateCreated` is stamped unless the caller already provided one.
    """
    database = database if database is not None else db
    if database is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict.setdefault("dateCreated", now_utc())
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, database=None) -> List[Dict[str, Any]]:
    database = database if database is not None else db
    if database is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(doc, exclude=()):
    """Make a document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if doc is None:
        return None
    if isinstance(doc, list):
        return [serialize_doc(d, exclude) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k in exclude:
            continue
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = serialize_doc(v)
    return out
