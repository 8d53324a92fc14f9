"""
One-time passcode issuance and verification.

A code is tied to exactly one contact (an email address or a digits-only
phone number). Re-issue for a contact is blocked for OTP_COOLDOWN_SECONDS
by a per-contact row in ``otp_cooldown``; the row is written with a single
conditional upsert so two concurrent requests cannot both pass.
"""

import logging
import re
import secrets
from datetime import timedelta

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import COL_OTP, COL_OTP_COOLDOWN, COL_USER, utcnow
from errors import InvalidOrExpiredCode, RateLimited, ValidationError
from notifier import DeliveryError, Notifier
from schemas import OtpCode
from security import create_access_token, token_claims

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-\(\)]{10,}$")


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_RE.match(phone))


def normalize_phone(phone: str) -> str:
    return re.sub(r"\D", "", phone)


def generate_code(length: int = config.OTP_LENGTH) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def resolve_contact(email: str | None, phone: str | None) -> tuple[str, str]:
    """Return (field, value) for the contact a request refers to.

    Email takes precedence when both are supplied.
    """
    email = (email or "").strip()
    phone = (phone or "").strip()
    if not email and not phone:
        raise ValidationError("Email or phone number is required")
    if email:
        if not is_valid_email(email):
            raise ValidationError("Invalid email format")
        return "email", email.lower()
    if not is_valid_phone(phone):
        raise ValidationError("Invalid phone number format")
    return "phone", normalize_phone(phone)


def _claim_cooldown(db: Database, contact: str) -> None:
    now = utcnow()
    try:
        db[COL_OTP_COOLDOWN].find_one_and_update(
            {"contact": contact, "until": {"$lte": now}},
            {"$set": {"until": now + timedelta(seconds=config.OTP_COOLDOWN_SECONDS), "updated_at": now}},
            upsert=True,
        )
    except DuplicateKeyError:
        # a live window exists, so the upsert tried to insert a second row
        raise RateLimited(
            "Please wait 1 minute before requesting another OTP",
            retry_after=config.OTP_COOLDOWN_SECONDS,
        )


def request_code(db: Database, notifier: Notifier, email: str | None = None, phone: str | None = None) -> dict:
    field, contact = resolve_contact(email, phone)
    _claim_cooldown(db, f"{field}:{contact}")

    now = utcnow()
    code = generate_code()
    record = OtpCode(code=code, expires_at=now + timedelta(seconds=config.OTP_TTL_SECONDS), created_at=now)
    data = record.model_dump(exclude_none=True)
    data[field] = contact
    db[COL_OTP].insert_one(data)

    # A failed delivery leaves the code valid.
    try:
        if field == "email":
            notifier.send_email_code(contact, code)
        else:
            notifier.send_sms_code(phone.strip(), code)
    except DeliveryError:
        logger.warning("OTP delivery to %s failed", contact, exc_info=True)

    if config.is_development():
        logger.info("DEVELOPMENT MODE: OTP %s for %s", code, contact)
    else:
        logger.info("OTP issued for %s", contact)

    result = {
        "message": f"OTP sent successfully to {contact}",
        "method": "email" if field == "email" else "sms",
    }
    if config.is_development():
        result["code"] = code
    return result


def _upsert_verified_user(db: Database, field: str, contact: str, now) -> dict:
    verified_flag = "is_email_verified" if field == "email" else "is_phone_verified"
    update = {
        "$set": {verified_flag: True, "updated_at": now},
        "$setOnInsert": {
            "first_name": "",
            "last_name": "",
            "role": "USER",
            "created_at": now,
        },
    }
    try:
        return db[COL_USER].find_one_and_update(
            {field: contact}, update, upsert=True, return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # a concurrent verification created the user first
        logger.info("User for %s created concurrently, updating it instead", contact)
        return db[COL_USER].find_one_and_update(
            {field: contact}, {"$set": update["$set"]}, return_document=ReturnDocument.AFTER,
        )


def verify_code(db: Database, email: str | None, phone: str | None, code: str) -> tuple[str, dict]:
    if not code:
        raise ValidationError("OTP code is required")
    field, contact = resolve_contact(email, phone)
    now = utcnow()

    otp = db[COL_OTP].find_one_and_update(
        {field: contact, "code": code, "used": False, "expires_at": {"$gt": now}},
        {"$set": {"used": True, "used_at": now}},
        sort=[("created_at", DESCENDING)],
    )
    if otp is None:
        raise InvalidOrExpiredCode()

    db[COL_OTP_COOLDOWN].delete_one({"contact": f"{field}:{contact}"})

    user = _upsert_verified_user(db, field, contact, now)
    user.setdefault("is_email_verified", False)
    user.setdefault("is_phone_verified", False)
    logger.info("OTP verified for %s (user %s)", contact, user["_id"])
    return create_access_token(token_claims(user)), user
