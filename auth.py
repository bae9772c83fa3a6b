import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from database import get_db, serialize_doc
from errors import NotFoundError
from schemas import UserRole
from stores import AccountStore

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))
PBKDF2_ROUNDS = 200_000

security = HTTPBearer()


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return f"{salt}${digest}"


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash or "$" not in password_hash:
        return False
    salt, digest = password_hash.split("$", 1)
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return hmac.compare_digest(candidate, digest)


def create_token(user_id: str) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=JWT_EXPIRE_DAYS)
    return jwt.encode({"id": user_id, "exp": exp}, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def public_user(user: dict) -> dict:
    out = serialize_doc(user)
    out.pop("password_hash", None)
    return out


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security), database=Depends(get_db)):
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    try:
        user = AccountStore(database).find_user(user_id)
    except NotFoundError:
        user = None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return public_user(user)


def require_roles(*roles: UserRole):
    allowed = {UserRole(r).value for r in roles}

    def dependency(user=Depends(get_current_user)):
        if user.get("role") not in allowed:
            raise HTTPException(
                status_code=403,
                detail=f"User role '{user.get('role')}' is not authorized to access this route",
            )
        return user

    return dependency
