"""Bearer-token identity for API callers.

Tokens are issued by the directory-backed login layer; this service only
verifies them and resolves the active user they name.
"""

from datetime import UTC, datetime, timedelta
from typing import Any, cast

from fastapi import HTTPException
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.config import settings
from app.models.user import User
from app.services.common import coerce_uuid


def _now() -> datetime:
    return datetime.now(UTC)


def _jwt_secret() -> str:
    settings.validate_jwt_config()
    return cast(str, settings.jwt_secret)


def create_access_token(user: User, ttl_minutes: int | None = None) -> str:
    now = _now()
    ttl = ttl_minutes if ttl_minutes is not None else settings.jwt_access_ttl_minutes
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "admin": bool(user.is_admin),
        "typ": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl)).timestamp()),
    }
    return cast(str, jwt.encode(payload, _jwt_secret(), algorithm=settings.jwt_algorithm))


def decode_access_token(token: str) -> dict:
    try:
        payload = cast(
            dict[Any, Any],
            jwt.decode(token, _jwt_secret(), algorithms=[settings.jwt_algorithm]),
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    if payload.get("typ") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")
    return payload


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def resolve_user(db: Session, token: str) -> User:
    payload = decode_access_token(token)
    try:
        user_id = coerce_uuid(payload.get("sub"))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid token subject") from exc
    user = db.get(User, user_id) if user_id else None
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user
