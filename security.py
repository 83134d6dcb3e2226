# security.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database

from config import settings
from database import to_obj_id
from errors import AuthenticationError, AuthorizationError, ValidationError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)
bearer_scheme = HTTPBearer(auto_error=False)

PRIVATE_USER_FIELDS = ("passwordHash", "verificationToken", "resetPasswordToken", "resetPasswordExpire")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def generate_token(user_id: Any) -> str:
    payload = {
        "id": str(user_id),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> str:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        logger.debug("Rejected bearer token: %s", e)
        raise AuthenticationError("Not authorized to access this route")
    user_id = payload.get("id")
    if not user_id:
        raise AuthenticationError("Not authorized to access this route")
    return user_id


def get_db(request: Request) -> Database:
    return request.app.state.db


def load_user_from_token(db: Database, token: Optional[str]) -> Dict[str, Any]:
    if not token:
        raise AuthenticationError("Not authorized to access this route")
    user_id = decode_token(token)
    try:
        oid = to_obj_id(user_id)
    except ValidationError:
        raise AuthenticationError("Not authorized to access this route")
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise AuthenticationError("User not found")
    return user


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    token = credentials.credentials if credentials else None
    return load_user_from_token(db, token)


def require_roles(*roles: str):
    def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in roles:
            raise AuthorizationError(f"User role '{user.get('role')}' is not authorized to access this route")
        return user
    return dependency


def public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Strip credentials and secrets before a user document leaves the service."""
    if user is None:
        return None
    return {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}
