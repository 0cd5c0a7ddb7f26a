from datetime import datetime, timedelta, timezone
from typing import Any, Optional
import jwt
from passlib.context import CryptContext

from beacon.core.config import settings

# Prefer argon2, keep bcrypt as fallback for compatibility
pwd_context = CryptContext(schemes=["argon2", "bcrypt"], deprecated="auto")

UNSUBSCRIBE_PURPOSE = "email-unsubscribe"

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def create_access_token(subject: str | Any, roles: list[str], expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(tz=timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode: dict[str, Any] = {"sub": str(subject), "exp": expire, "roles": roles}
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


def create_unsubscribe_token(user_id: int) -> str:
    """Long-lived token embedded in broadcast emails.

    It carries no expiry: an unsubscribe link must keep working for as long as
    the email sits in someone's inbox.
    """
    return jwt.encode({"sub": str(user_id), "purpose": UNSUBSCRIBE_PURPOSE}, settings.secret_key, algorithm=settings.algorithm)


def decode_unsubscribe_token(token: str) -> int:
    """Return the user id from an unsubscribe token. Raises jwt.PyJWTError if invalid."""
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    if payload.get("purpose") != UNSUBSCRIBE_PURPOSE:
        raise jwt.InvalidTokenError("Not an unsubscribe token")
    return int(payload["sub"])
