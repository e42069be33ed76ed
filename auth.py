import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import BCRYPT_ROUNDS, JWT_ALGO, JWT_EXPIRE_HOURS, JWT_SECRET, TOKEN_REFRESH_WINDOW_SECONDS
from database import db, serialize_doc, to_object_id

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ALL_PERMISSIONS = [
    "manage_products",
    "manage_categories",
    "manage_orders",
    "manage_users",
    "manage_admins",
    "view_analytics",
    "manage_settings",
]

ROLE_PERMISSIONS = {
    "super_admin": list(ALL_PERMISSIONS),
    "admin": ["manage_products", "manage_categories", "manage_orders", "manage_users", "view_analytics"],
    "moderator": ["manage_orders", "manage_users", "view_analytics"],
}


def permissions_for_role(role: str) -> list:
    return list(ROLE_PERMISSIONS.get(role, []))


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_token(payload: dict, expires_in: Optional[timedelta] = None) -> str:
    exp = datetime.now(timezone.utc) + (expires_in or timedelta(hours=JWT_EXPIRE_HOURS))
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _token_payload(credentials: Optional[HTTPAuthorizationCredentials], token_type: str) -> dict:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    payload = decode_token(credentials.credentials)
    if payload.get("type") != token_type:
        raise HTTPException(status_code=401, detail="Invalid token type")
    if not payload.get("id"):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return payload


def _refresh_if_expiring(response: Response, payload: dict):
    """Hand out a fresh token in X-New-Token when the current one is about to expire."""
    remaining = payload.get("exp", 0) - datetime.now(timezone.utc).timestamp()
    if remaining < TOKEN_REFRESH_WINDOW_SECONDS:
        fresh = {k: v for k, v in payload.items() if k != "exp"}
        response.headers["X-New-Token"] = create_token(fresh)


def get_current_user(response: Response, credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    payload = _token_payload(credentials, "user")
    user = db["user"].find_one({"_id": to_object_id(payload["id"])}, {"otp": 0})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")
    _refresh_if_expiring(response, payload)
    return serialize_doc(user)


def get_current_admin(response: Response, credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    payload = _token_payload(credentials, "admin")
    admin = db["admin"].find_one({"_id": to_object_id(payload["id"])}, {"password_hash": 0})
    if not admin:
        raise HTTPException(status_code=401, detail="Admin not found")
    if not admin.get("is_active", True):
        raise HTTPException(status_code=401, detail="Admin account is deactivated")
    _refresh_if_expiring(response, payload)
    return serialize_doc(admin)


def require_permission(permission: str):
    def checker(admin=Depends(get_current_admin)):
        if admin.get("role") == "super_admin":
            return admin
        if permission not in admin.get("permissions", []):
            raise HTTPException(status_code=403, detail=f"Access denied. Required permission: {permission}")
        return admin

    return checker
