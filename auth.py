import hashlib
import logging
import secrets
from datetime import timedelta, timezone
from typing import Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, Header
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings
from database import get_db, utcnow
from errors import AuthenticationFailure, ValidationFailure
from schemas import UserCreate, UserLogin, UserPublic

logger = logging.getLogger(__name__)


def hash_password(password: str, salt: Optional[str] = None) -> Tuple[str, str]:
    salt = salt or secrets.token_hex(16)
    hashed = hashlib.sha256((salt + password).encode()).hexdigest()
    return hashed, salt


def to_public(user: dict) -> UserPublic:
    return UserPublic(
        id=str(user["_id"]),
        name=user.get("name"),
        email=user.get("email"),
        role=user.get("role", "traveler"),
        avatar_url=user.get("avatar_url"),
    )


def find_user(db: Database, user_id: str) -> Optional[dict]:
    try:
        return db["user"].find_one({"_id": ObjectId(user_id)})
    except (InvalidId, TypeError):
        return None


def _open_session(db: Database, user_id: str, settings: Settings) -> str:
    token = secrets.token_urlsafe(32)
    now = utcnow()
    db["session"].insert_one({
        "user_id": user_id,
        "token": token,
        "created_at": now,
        "expires_at": now + timedelta(days=settings.session_ttl_days),
    })
    return token


def register(db: Database, payload: UserCreate, settings: Settings) -> dict:
    if db["user"].find_one({"email": str(payload.email)}):
        raise ValidationFailure("Email already registered")
    hashed, salt = hash_password(payload.password)
    now = utcnow()
    user_doc = {
        "name": payload.name,
        "email": str(payload.email),
        "password_hash": hashed,
        "password_salt": salt,
        "role": payload.role,
        "bio": payload.bio,
        "avatar_url": None,
        "created_at": now,
        "updated_at": now,
    }
    if payload.role == "guide":
        user_doc["guide_info"] = {"rating": {"average": 0, "count": 0}}
    try:
        user_id = str(db["user"].insert_one(user_doc).inserted_id)
    except DuplicateKeyError:
        raise ValidationFailure("Email already registered")
    user_doc["_id"] = user_id
    logger.info(f"Registered user {user_id} ({payload.role})")
    return {"token": _open_session(db, user_id, settings), "user": to_public(user_doc)}


def login(db: Database, payload: UserLogin, settings: Settings) -> dict:
    user = db["user"].find_one({"email": str(payload.email)})
    if not user:
        raise AuthenticationFailure("Invalid credentials")
    hashed, _ = hash_password(payload.password, user.get("password_salt"))
    if hashed != user.get("password_hash"):
        raise AuthenticationFailure("Invalid credentials")
    return {"token": _open_session(db, str(user["_id"]), settings), "user": to_public(user)}


def user_for_token(db: Database, token: str) -> Optional[dict]:
    session = db["session"].find_one({"token": token})
    if not session:
        return None
    expires_at = session.get("expires_at")
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= utcnow():
            return None
    return find_user(db, session.get("user_id"))


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
) -> dict:
    if not authorization:
        raise AuthenticationFailure("Missing Authorization header")
    try:
        scheme, token = authorization.split(" ", 1)
    except ValueError:
        raise AuthenticationFailure("Invalid Authorization header")
    if scheme.lower() != "bearer":
        raise AuthenticationFailure("Invalid auth scheme")
    user = user_for_token(db, token.strip())
    if not user:
        raise AuthenticationFailure("Invalid or expired token")
    user["id"] = str(user["_id"])
    return user
