"""
Authentication

bcrypt password hashing and HS256 bearer tokens. The token is accepted from
the Authorization header or from the HTTP-only cookie set at login.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import get_db, oid, serialize_doc
from errors import Forbidden, NotAuthenticated

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
http_bearer = HTTPBearer(auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise NotAuthenticated("Invalid or expired token")


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    token = credentials.credentials if credentials else request.cookies.get(config.COOKIE_NAME)
    if not token:
        raise NotAuthenticated("Access denied: no token provided")
    payload = decode_access_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise NotAuthenticated("Invalid or expired token")
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise NotAuthenticated("User no longer exists")
    return serialize_doc(user)


def require_admin(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") != "admin":
        raise Forbidden("Admin access required")
    return current_user
