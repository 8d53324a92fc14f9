"""
Admin accounts and their capability flags. Only a SUPERADMIN manages these.
"""

import logging
from datetime import timedelta

from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import COL_ADMIN_PERMISSION, COL_USER, to_object_id, utcnow
from errors import Conflict, Forbidden, NotFound, Unauthorized
from schemas import ADMIN_ROLES, CreateAdminRequest, PermissionFlags, PermissionsUpdate, User
from security import (
    authorize,
    create_access_token,
    get_password_hash,
    public_user,
    token_claims,
    verify_password,
)

logger = logging.getLogger(__name__)


def login(db: Database, email: str, password: str) -> str:
    """Password login for admin accounts; issues a short-lived token."""
    user = db[COL_USER].find_one({"email": (email or "").strip().lower()})
    if not user or not verify_password(password, user.get("password_hash")):
        raise Unauthorized("Incorrect username or password")
    if user.get("role") not in ADMIN_ROLES:
        raise Forbidden("Admin access required")
    return create_access_token(
        token_claims(user),
        expires_delta=timedelta(minutes=config.ADMIN_TOKEN_EXPIRE_MINUTES),
    )


def _insert_user(db: Database, user: User) -> dict:
    doc = user.model_dump(exclude_none=True)
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    doc["_id"] = db[COL_USER].insert_one(doc).inserted_id
    return doc


def create_admin(db: Database, actor: dict, payload: CreateAdminRequest) -> dict:
    authorize(actor["role"], ("SUPERADMIN",))
    email = payload.email.lower()
    if db[COL_USER].find_one({"email": email}):
        raise Conflict("User already exists")

    admin = _insert_user(db, User(
        email=email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        role="ADMIN",
        is_email_verified=True,
        password_hash=get_password_hash(payload.password),
    ))
    flags = payload.permissions or PermissionFlags()
    db[COL_ADMIN_PERMISSION].insert_one({
        "admin_id": str(admin["_id"]),
        **flags.model_dump(),
        "created_at": utcnow(),
        "updated_at": utcnow(),
    })
    logger.info("Admin %s created by %s", email, actor["id"])
    return public_user(admin)


def _permissions_for(db: Database, admin_id: str) -> dict:
    row = db[COL_ADMIN_PERMISSION].find_one({"admin_id": admin_id}) or {}
    return PermissionFlags(**{k: row[k] for k in PermissionFlags.model_fields if k in row}).model_dump()


def own_permissions(db: Database, actor: dict) -> dict:
    """Flags of the calling ADMIN; all false until a SUPERADMIN grants any."""
    authorize(actor["role"], ("ADMIN",))
    return _permissions_for(db, actor["id"])


def list_admins(db: Database, actor: dict) -> list[dict]:
    authorize(actor["role"], ("SUPERADMIN",))
    out = []
    for admin in db[COL_USER].find({"role": "ADMIN"}):
        data = public_user(admin)
        data["permissions"] = _permissions_for(db, data["id"])
        out.append(data)
    return out


def _find_admin(db: Database, admin_id: str) -> dict:
    oid = to_object_id(admin_id)
    admin = db[COL_USER].find_one({"_id": oid, "role": "ADMIN"}) if oid else None
    if admin is None:
        raise NotFound("Admin not found")
    return admin


def update_permissions(db: Database, actor: dict, admin_id: str, changes: PermissionsUpdate) -> dict:
    authorize(actor["role"], ("SUPERADMIN",))
    _find_admin(db, admin_id)
    now = utcnow()
    updates = changes.model_dump(exclude_none=True)
    defaults = {k: False for k in PermissionFlags.model_fields if k not in updates}
    row = db[COL_ADMIN_PERMISSION].find_one_and_update(
        {"admin_id": admin_id},
        {
            "$set": {**updates, "updated_at": now},
            "$setOnInsert": {**defaults, "created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Permissions for admin %s updated by %s: %s", admin_id, actor["id"], updates)
    return {"admin_id": admin_id, **{k: bool(row.get(k)) for k in PermissionFlags.model_fields}}


def delete_admin(db: Database, actor: dict, admin_id: str) -> None:
    authorize(actor["role"], ("SUPERADMIN",))
    admin = _find_admin(db, admin_id)
    db[COL_ADMIN_PERMISSION].delete_many({"admin_id": admin_id})
    db[COL_USER].delete_one({"_id": admin["_id"]})
    logger.info("Admin %s deleted by %s", admin_id, actor["id"])


def seed_superadmin(db: Database) -> None:
    if not (config.SUPERADMIN_EMAIL and config.SUPERADMIN_PASSWORD):
        return
    if db[COL_USER].find_one({"role": "SUPERADMIN"}):
        return
    email = config.SUPERADMIN_EMAIL.lower()
    if db[COL_USER].find_one({"email": email}):
        logger.warning("Cannot seed superadmin: %s is already registered", email)
        return
    _insert_user(db, User(
        email=email,
        role="SUPERADMIN",
        is_email_verified=True,
        password_hash=get_password_hash(config.SUPERADMIN_PASSWORD),
    ))
    logger.info("Seeded superadmin %s", email)
