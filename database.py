"""
MongoDB access for EduStore.

The client is created once per process by the app lifespan (see main.py)
and the database handle is handed to every service function explicitly.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

COL_USER = "user"
COL_OTP = "otp_code"
COL_OTP_COOLDOWN = "otp_cooldown"
COL_PRODUCT = "product"
COL_ORDER = "order"
COL_ADMIN_PERMISSION = "admin_permission"
COL_CATEGORY = "category"
COL_EXAM = "exam"


def utcnow() -> datetime:
    # naive UTC, matching what pymongo hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def connect(url: str | None = None) -> MongoClient:
    client = MongoClient(url or config.DATABASE_URL)
    logger.info("Connected to MongoDB database %s", config.DATABASE_NAME)
    return client


def ensure_indexes(db: Database) -> None:
    db[COL_USER].create_index([("email", ASCENDING)], unique=True, sparse=True)
    db[COL_USER].create_index([("phone", ASCENDING)], unique=True, sparse=True)
    db[COL_OTP].create_index([("email", ASCENDING), ("code", ASCENDING)])
    db[COL_OTP].create_index([("phone", ASCENDING), ("code", ASCENDING)])
    db[COL_OTP_COOLDOWN].create_index([("contact", ASCENDING)], unique=True)
    db[COL_ORDER].create_index([("order_number", ASCENDING)], unique=True)
    db[COL_ORDER].create_index([("downloads.download_id", ASCENDING)], unique=True, sparse=True)
    db[COL_ORDER].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    db[COL_ADMIN_PERMISSION].create_index([("admin_id", ASCENDING)], unique=True)
    db[COL_CATEGORY].create_index([("name", ASCENDING)], unique=True)
    db[COL_EXAM].create_index([("created_at", ASCENDING)])


def get_db(request: Request) -> Database:
    return request.app.state.db


def to_object_id(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def id_filter(value: str) -> dict:
    """Match a document whose _id is either the ObjectId form or the raw string."""
    oid = to_object_id(value)
    if oid is None:
        return {"_id": value}
    return {"_id": {"$in": [oid, str(value)]}}


def create_document(db: Database, collection_name: str, data: BaseModel | dict) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc["created_at"] = doc.get("created_at") or now
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        d[k] = _serialize_value(v)
    return d


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value
