from typing import List
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
import jwt

from beacon.core.cache import RedisCache, create_redis_client
from beacon.core.config import settings
from beacon.db.session import get_db
from beacon.models.user import User
from beacon.services.broadcast_engine import BroadcastEngine, get_broadcast_engine as _engine_singleton

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

def _decode(token: str) -> dict:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

def get_current_roles(token: str = Depends(oauth2_scheme)) -> List[str]:
    roles = _decode(token).get("roles") or []
    if not isinstance(roles, list):
        roles = [roles]
    return roles

def require_roles(*allowed: str):
    def checker(roles: List[str] = Depends(get_current_roles)):
        if not any(r in roles for r in allowed):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return checker

def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    """Resolve the JWT subject (email) to an active user row."""
    sub = (_decode(token).get("sub") or "").lower()
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = db.query(User).filter(User.email == sub).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or blocked")
    return user

def get_current_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return user

def get_broadcast_engine() -> BroadcastEngine:
    return _engine_singleton()

redis_client = create_redis_client()

# Admin double-submit guard, keyed by admin id and title; shared by every worker
_submit_throttle = RedisCache(redis_client, prefix=settings.redis_prefix + "submit:", ttl_seconds=settings.broadcast_throttle_seconds)

def get_submit_throttle() -> RedisCache:
    return _submit_throttle
