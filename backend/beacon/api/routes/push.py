import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from beacon.api.deps import get_current_user
from beacon.core.clock import utcnow
from beacon.db.session import get_db
from beacon.models.push_token import PushToken
from beacon.models.user import User
from beacon.schemas.notification import PushRegister, PushRemove

router = APIRouter()
logger = logging.getLogger(__name__)


def _upsert(db: Session, payload: PushRegister, user: User, user_agent: str | None) -> bool:
    """Insert or move ``payload.token`` to ``user``. Returns True when it changed owner."""
    now = utcnow()
    existing = db.query(PushToken).filter(PushToken.token == payload.token).first()
    if existing is None:
        db.add(PushToken(
            token=payload.token,
            user_id=user.id,
            platform=payload.platform,
            device_id=payload.device_id,
            user_agent=user_agent,
            last_used_at=now,
            created_at=now,
        ))
        db.commit()
        return False
    reassigned = existing.user_id != user.id
    existing.user_id = user.id
    existing.platform = payload.platform
    existing.device_id = payload.device_id
    existing.user_agent = user_agent
    existing.last_used_at = now
    db.commit()
    return reassigned


@router.post("/register", response_model=dict)
def register_token(payload: PushRegister, request: Request, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    user_agent = (request.headers.get("user-agent") or "")[:512] or None
    try:
        reassigned = _upsert(db, payload, user, user_agent)
    except IntegrityError:
        # Same token registered concurrently; the row exists now
        db.rollback()
        reassigned = _upsert(db, payload, user, user_agent)
    if reassigned:
        logger.info("Push token moved to user %s", user.id)
    return {"status": "ok", "reassigned": reassigned}


@router.delete("/remove", response_model=dict)
def remove_token(payload: PushRemove, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    removed = (
        db.query(PushToken)
        .filter(PushToken.token == payload.token, PushToken.user_id == user.id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return {"status": "ok", "removed": removed}
