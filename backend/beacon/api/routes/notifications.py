from typing import Literal
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
import jwt
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from beacon.api.deps import get_current_user
from beacon.core.clock import utcnow
from beacon.core.config import settings
from beacon.core.security import decode_unsubscribe_token
from beacon.db.session import get_db
from beacon.models.delivery_tracking import Channel, DeliveryTracking
from beacon.models.notification import Notification
from beacon.models.user import User
from beacon.models.user_notification import UserNotification
from beacon.schemas.notification import FeedItemOut, FeedPage, EmailSubscription
from beacon.services.delivery_tracker import DeliveryTracker

router = APIRouter()
logger = logging.getLogger(__name__)


def _inbox(db: Session, user: User):
    """The user's inbox joined with content, expired broadcasts hidden."""
    now = utcnow()
    return (
        db.query(UserNotification, Notification)
        .join(Notification, UserNotification.notification_id == Notification.id)
        .filter(
            UserNotification.user_id == user.id,
            or_(Notification.expires_at.is_(None), Notification.expires_at > now),
        )
    )


def _unread_count(db: Session, user: User) -> int:
    return _inbox(db, user).filter(UserNotification.is_read.is_(False)).count()


@router.get("")
@router.get("/")
def list_notifications(
    type: str | None = None,
    priority: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    mode: Literal["list", "unreadCount"] = "list",
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if mode == "unreadCount":
        return {"unread_count": _unread_count(db, user)}
    q = _inbox(db, user)
    if type:
        q = q.filter(Notification.type == type)
    if priority:
        q = q.filter(Notification.priority == priority)
    total = q.count()
    rows = (
        q.order_by(UserNotification.created_at.desc(), UserNotification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    items = [
        FeedItemOut(
            id=un.id,
            notification_id=n.id,
            title=n.title,
            message=n.message,
            type=n.type,
            priority=n.priority,
            banner_url=n.banner_url,
            cta_label=n.cta_label,
            cta_url=n.cta_url,
            is_read=un.is_read,
            read_at=un.read_at,
            created_at=un.created_at,
            expires_at=n.expires_at,
        )
        for un, n in rows
    ]
    pages = (total + limit - 1) // limit if total else 1
    return FeedPage(items=items, total=total, unread_count=_unread_count(db, user), page=page, limit=limit, pages=pages)


@router.patch("/read-all", response_model=dict)
def mark_all_read(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    now = utcnow()
    unread_ids = [
        nid for (nid,) in db.query(UserNotification.notification_id)
        .filter(UserNotification.user_id == user.id, UserNotification.is_read.is_(False))
        .all()
    ]
    updated = db.execute(
        update(UserNotification)
        .where(UserNotification.user_id == user.id, UserNotification.is_read.is_(False))
        .values(is_read=True, read_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    tracker = DeliveryTracker(db)
    for nid in unread_ids:
        tracker.mark_opened(nid, [user.id], now=now)
    db.commit()
    return {"updated": updated, "unread_count": 0}


@router.patch("/{user_notification_id}/read", response_model=dict)
def mark_read(user_notification_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Idempotent: a second call changes nothing."""
    un = db.query(UserNotification).filter(UserNotification.id == user_notification_id, UserNotification.user_id == user.id).first()
    if not un:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    if not un.is_read:
        now = utcnow()
        un.is_read = True
        un.read_at = now
        DeliveryTracker(db).mark_opened(un.notification_id, [user.id], now=now)
        db.commit()
    return {"id": un.id, "is_read": True, "read_at": un.read_at}


@router.get("/email-subscription", response_model=EmailSubscription)
def get_email_subscription(user: User = Depends(get_current_user)):
    return {"email_subscribed": bool(user.email_subscribed)}


@router.put("/email-subscription", response_model=EmailSubscription)
def set_email_subscription(payload: EmailSubscription, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    user.email_subscribed = payload.email_subscribed
    db.commit()
    logger.info("User %s email_subscribed=%s", user.id, payload.email_subscribed)
    return {"email_subscribed": user.email_subscribed}


@router.get("/unsubscribe/{token}", response_model=dict)
def unsubscribe(token: str, db: Session = Depends(get_db)):
    """Target of the link embedded in broadcast emails; no login required."""
    try:
        user_id = decode_unsubscribe_token(token)
    except (jwt.PyJWTError, KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid unsubscribe link")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if user.email_subscribed:
        user.email_subscribed = False
        db.commit()
        logger.info("User %s unsubscribed from broadcast emails", user.id)
    return {"status": "unsubscribed", "email": user.email}


@router.get("/{notification_id}/click")
def click(notification_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Record the click, then send the browser to the call-to-action."""
    n = db.get(Notification, notification_id)
    if not n:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    received = (
        db.query(UserNotification.id).filter(UserNotification.notification_id == n.id, UserNotification.user_id == user.id).first()
        or db.query(DeliveryTracking.id).filter(DeliveryTracking.notification_id == n.id, DeliveryTracking.user_id == user.id).first()
    )
    if not received:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Notification was not sent to this user")
    if not n.cta_url:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification has no call-to-action")
    tracker = DeliveryTracker(db)
    # In-app first; push/email-only recipients get the click on their own channel
    for channel in (Channel.IN_APP, Channel.PUSH, Channel.EMAIL):
        if tracker.mark_clicked(n.id, [user.id], channel=channel):
            break
    db.commit()
    url = n.cta_url
    if url.startswith("/"):
        url = settings.app_url.rstrip("/") + url
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
