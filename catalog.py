"""
Catalog categories. Names are unique; a category still used by a product
cannot be deleted.
"""

import logging

from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import COL_CATEGORY, COL_PRODUCT, serialize_doc, to_object_id, utcnow
from errors import Conflict, NotFound
from schemas import ADMIN_ROLES, Category
from security import authorize

logger = logging.getLogger(__name__)


def list_categories(db: Database) -> list[dict]:
    return [serialize_doc(c) for c in db[COL_CATEGORY].find().sort("name", ASCENDING)]


def create_category(db: Database, actor: dict, payload: Category) -> dict:
    authorize(actor["role"], ADMIN_ROLES)
    if db[COL_CATEGORY].find_one({"name": payload.name}):
        raise Conflict("Category already exists")
    now = utcnow()
    doc = {**payload.model_dump(), "created_at": now, "updated_at": now}
    try:
        doc["_id"] = db[COL_CATEGORY].insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise Conflict("Category already exists")
    logger.info("Category %s created by %s", payload.name, actor["id"])
    return serialize_doc(doc)


def _find_category(db: Database, category_id: str) -> dict:
    oid = to_object_id(category_id)
    category = db[COL_CATEGORY].find_one({"_id": oid}) if oid else None
    if category is None:
        raise NotFound("Category not found")
    return category


def update_category(db: Database, actor: dict, category_id: str, payload: Category) -> dict:
    authorize(actor["role"], ADMIN_ROLES)
    category = _find_category(db, category_id)
    if db[COL_CATEGORY].find_one({"name": payload.name, "_id": {"$ne": category["_id"]}}):
        raise Conflict("Category already exists")
    try:
        updated = db[COL_CATEGORY].find_one_and_update(
            {"_id": category["_id"]},
            {"$set": {**payload.model_dump(), "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise Conflict("Category already exists")
    if updated is None:
        raise NotFound("Category not found")
    if category["name"] != updated["name"]:
        # products reference their category by name
        db[COL_PRODUCT].update_many({"category": category["name"]}, {"$set": {"category": updated["name"]}})
    return serialize_doc(updated)


def delete_category(db: Database, actor: dict, category_id: str) -> None:
    authorize(actor["role"], ADMIN_ROLES)
    category = _find_category(db, category_id)
    if db[COL_PRODUCT].count_documents({"category": category["name"]}):
        raise Conflict("Cannot delete category with products")
    db[COL_CATEGORY].delete_one({"_id": category["_id"]})
    logger.info("Category %s deleted by %s", category["name"], actor["id"])
