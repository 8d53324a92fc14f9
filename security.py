from datetime import datetime, timedelta, timezone

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import COL_USER, get_db, serialize_doc, to_object_id
from errors import Forbidden, InvalidToken, Unauthorized

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

PUBLIC_USER_FIELDS = (
    "email", "phone", "role", "first_name", "last_name",
    "is_email_verified", "is_phone_verified", "created_at",
)


def verify_password(plain_password, hashed_password):
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    issued_at = datetime.now(timezone.utc).replace(microsecond=0)
    if expires_delta is None:
        expires_delta = timedelta(days=config.ACCESS_TOKEN_EXPIRE_DAYS)
    expire = issued_at + expires_delta
    to_encode.update({"iat": issued_at, "exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def token_claims(user: dict) -> dict:
    claims = {"sub": str(user["_id"]), "role": user.get("role", "USER")}
    if user.get("email"):
        claims["email"] = user["email"]
    if user.get("phone"):
        claims["phone"] = user["phone"]
    return claims


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise InvalidToken()
    if not payload.get("sub"):
        raise InvalidToken()
    return payload


def get_user(db: Database, user_id: str):
    oid = to_object_id(user_id)
    if oid is None:
        return None
    return db[COL_USER].find_one({"_id": oid})


def public_user(user: dict) -> dict:
    data = {"id": str(user["_id"])}
    data.update({k: user.get(k) for k in PUBLIC_USER_FIELDS})
    data["is_email_verified"] = bool(data["is_email_verified"])
    data["is_phone_verified"] = bool(data["is_phone_verified"])
    return serialize_doc(data)


def authenticate(db: Database, token: str | None) -> dict:
    """Resolve a bearer token to the current principal.

    The role is read from the stored user rather than the token, so demoted
    or deleted accounts lose access before their token expires.
    """
    if not token:
        raise Unauthorized("No token provided")
    try:
        payload = decode_token(token)
    except InvalidToken:
        raise Unauthorized("Invalid token")
    user = get_user(db, payload["sub"])
    if user is None:
        raise Unauthorized("User not found")
    return {
        "id": str(user["_id"]),
        "role": user.get("role", "USER"),
        "email": user.get("email"),
        "phone": user.get("phone"),
    }


def authorize(role: str, allowed_roles) -> None:
    if role not in allowed_roles:
        raise Forbidden()


def refresh_access_token(db: Database, token: str) -> str:
    payload = decode_token(token)
    user = get_user(db, payload["sub"])
    if user is None:
        raise InvalidToken("User not found")
    # a refreshed token lives exactly as long as the one it replaces
    lifetime = None
    if "iat" in payload:
        lifetime = timedelta(seconds=payload["exp"] - payload["iat"])
    return create_access_token(token_claims(user), expires_delta=lifetime)


async def get_current_user(token: str | None = Depends(oauth2_scheme), db: Database = Depends(get_db)):
    return authenticate(db, token)


def require_roles(*roles: str):
    async def dependency(current=Depends(get_current_user)):
        authorize(current["role"], roles)
        return current

    return dependency
