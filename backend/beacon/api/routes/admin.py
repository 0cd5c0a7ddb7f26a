from datetime import datetime
from typing import Literal
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from beacon.api.deps import require_roles, get_current_admin, get_broadcast_engine, get_submit_throttle
from beacon.core.cache import RedisCache
from beacon.core.clock import to_naive_utc
from beacon.db.session import get_db
from beacon.models.notification import Notification
from beacon.models.user import User
from beacon.schemas.broadcast import BroadcastRequest, ScheduledBroadcastOut, CancelOut
from beacon.schemas.email_template import EmailTemplateCreate, EmailTemplateUpdate, EmailTemplateOut
from beacon.schemas.notification import NotificationAdminOut
from beacon.services import broadcast_store, email_templates
from beacon.services.analytics import AnalyticsAggregator
from beacon.services.broadcast_engine import BroadcastEngine
from beacon.services.errors import BroadcastError

router = APIRouter(dependencies=[Depends(require_roles("admin"))])
logger = logging.getLogger(__name__)
audit = logging.getLogger("beacon.audit")


def _http_error(e: BroadcastError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def _search(q, search: str | None, *columns):
    if not search or not search.strip():
        return q
    s = f"%{search.strip().lower()}%"
    cond = None
    for col in columns:
        c = func.lower(col).like(s)
        cond = c if cond is None else cond | c
    return q.filter(cond)


# ---- users ----------------------------------------------------------------

@router.get("/users", response_model=dict)
def list_users(
    page: int = 1,
    page_size: int = 25,
    search: str | None = None,
    db: Session = Depends(get_db),
):
    """Paginated list of users.

    Returns:
        items: current page of users
        total: total number of users under current filter
        page, page_size, pages
    """
    page = max(page, 1)
    page_size = max(1, min(page_size, 200))  # cap upper bound

    q = _search(db.query(User), search, User.email, User.full_name).order_by(User.id.asc())
    total = q.count()
    users = q.offset((page - 1) * page_size).limit(page_size).all()
    items = [
        {
            "id": u.id,
            "email": u.email,
            "full_name": u.full_name,
            "role": u.role,
            "is_active": u.is_active,
            "email_verified": u.email_verified,
            "email_subscribed": u.email_subscribed,
        }
        for u in users
    ]
    pages = (total + page_size - 1) // page_size if total else 1
    return {"items": items, "total": total, "page": page, "page_size": page_size, "pages": pages}


def _set_user_flag(db: Session, user_id: int, **values) -> dict:
    u = db.get(User, user_id)
    if not u:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    for k, v in values.items():
        setattr(u, k, v)
    db.commit()
    return {"status": "ok"}


@router.post("/users/{user_id}/block", response_model=dict)
def block_user(user_id: int, db: Session = Depends(get_db)):
    return _set_user_flag(db, user_id, is_active=False)


@router.post("/users/{user_id}/unblock", response_model=dict)
def unblock_user(user_id: int, db: Session = Depends(get_db)):
    return _set_user_flag(db, user_id, is_active=True)


@router.post("/users/{user_id}/verify-email", response_model=dict)
def verify_user_email(user_id: int, db: Session = Depends(get_db)):
    return _set_user_flag(db, user_id, email_verified=True)


# ---- broadcasts -----------------------------------------------------------

@router.post("/broadcasts", response_model=dict)
async def submit_broadcast(
    body: BroadcastRequest,
    admin: User = Depends(get_current_admin),
    engine: BroadcastEngine = Depends(get_broadcast_engine),
    throttle: RedisCache = Depends(get_submit_throttle),
):
    """Send now, or schedule, one broadcast.

    NOW answers after in-app and push have run; email continues in the
    background and its outcome shows up in the analytics endpoint.
    """
    payload = body.root
    key = f"{admin.id}:{payload.display_title().lower()}"
    # Double-click protection
    if not await throttle.add(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Same broadcast submitted moments ago, wait a moment")
    try:
        return await engine.submit(payload, created_by_id=admin.id)
    except BroadcastError as e:
        await throttle.delete(key)
        raise _http_error(e)


@router.get("/broadcasts/scheduled", response_model=list[ScheduledBroadcastOut])
def list_scheduled(db: Session = Depends(get_db)):
    return broadcast_store.list_scheduled(db)


@router.post("/broadcasts/{notification_id}/cancel", response_model=CancelOut)
def cancel_broadcast(
    notification_id: int,
    admin: User = Depends(get_current_admin),
    engine: BroadcastEngine = Depends(get_broadcast_engine),
):
    try:
        n = engine.cancel(notification_id, admin.id)
    except BroadcastError as e:
        raise _http_error(e)
    return {"id": n.id, "status": n.status, "send_mode": n.send_mode}


@router.get("/broadcasts/analytics", response_model=dict)
def fleet_analytics(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    channel: Literal["in_app", "push", "email"] | None = None,
    db: Session = Depends(get_db),
):
    return AnalyticsAggregator(db).fleet_stats(
        to_naive_utc(start_date) if start_date else None,
        to_naive_utc(end_date) if end_date else None,
        channel,
    )


@router.get("/broadcasts/{notification_id}/analytics", response_model=dict)
def broadcast_analytics(notification_id: int, db: Session = Depends(get_db)):
    try:
        return AnalyticsAggregator(db).stats_for(notification_id)
    except BroadcastError as e:
        raise _http_error(e)


# ---- notification records -------------------------------------------------

@router.get("/notifications", response_model=dict)
def list_notifications(
    page: int = 1,
    page_size: int = Query(20, ge=1, le=100),
    type: str | None = None,
    status_filter: str | None = Query(None, alias="status"),
    send_mode: str | None = None,
    search: str | None = None,
    db: Session = Depends(get_db),
):
    page = max(page, 1)
    q = db.query(Notification)
    if type:
        q = q.filter(Notification.type == type)
    if status_filter:
        q = q.filter(Notification.status == status_filter)
    if send_mode:
        q = q.filter(Notification.send_mode == send_mode)
    q = _search(q, search, Notification.title, Notification.message).order_by(Notification.created_at.desc(), Notification.id.desc())
    total = q.count()
    rows = q.offset((page - 1) * page_size).limit(page_size).all()
    pages = (total + page_size - 1) // page_size if total else 1
    return {
        "items": [NotificationAdminOut.model_validate(n).model_dump() for n in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
        "pages": pages,
    }


@router.get("/notifications/{notification_id}", response_model=dict)
def get_notification(notification_id: int, db: Session = Depends(get_db)):
    try:
        stats = AnalyticsAggregator(db).stats_for(notification_id)["stats"]
        n = broadcast_store.get(db, notification_id)
    except BroadcastError as e:
        raise _http_error(e)
    return {
        "notification": NotificationAdminOut.model_validate(n).model_dump(),
        "delivery_stats": stats["delivery_stats"],
        "by_channel": stats["by_channel"],
        "read_stats": stats["read_stats"],
    }


@router.delete("/notifications/{notification_id}", response_model=dict)
def delete_notification(
    notification_id: int,
    admin: User = Depends(get_current_admin),
    engine: BroadcastEngine = Depends(get_broadcast_engine),
):
    try:
        engine.delete(notification_id, admin.id)
    except BroadcastError as e:
        raise _http_error(e)
    return {"status": "ok"}


# ---- email templates ------------------------------------------------------

@router.get("/email-templates", response_model=list[EmailTemplateOut])
def list_email_templates(db: Session = Depends(get_db)):
    return email_templates.list_active(db)


@router.post("/email-templates", response_model=EmailTemplateOut, status_code=status.HTTP_201_CREATED)
def create_email_template(
    body: EmailTemplateCreate,
    admin: User = Depends(get_current_admin),
    engine: BroadcastEngine = Depends(get_broadcast_engine),
    db: Session = Depends(get_db),
):
    try:
        t = email_templates.create(db, engine.renderer, admin.id, **body.model_dump())
    except BroadcastError as e:
        raise _http_error(e)
    audit.info("email_template.created id=%s admin=%s name=%s", t.id, admin.id, t.name)
    return t


@router.put("/email-templates/{template_id}", response_model=EmailTemplateOut)
def update_email_template(
    template_id: int,
    body: EmailTemplateUpdate,
    admin: User = Depends(get_current_admin),
    engine: BroadcastEngine = Depends(get_broadcast_engine),
    db: Session = Depends(get_db),
):
    try:
        t = email_templates.update(db, engine.renderer, template_id, **body.model_dump(exclude_unset=True))
    except BroadcastError as e:
        raise _http_error(e)
    audit.info("email_template.updated id=%s admin=%s", t.id, admin.id)
    return t


@router.delete("/email-templates/{template_id}", response_model=dict)
def delete_email_template(template_id: int, admin: User = Depends(get_current_admin), db: Session = Depends(get_db)):
    try:
        email_templates.deactivate(db, template_id)
    except BroadcastError as e:
        raise _http_error(e)
    audit.info("email_template.deleted id=%s admin=%s", template_id, admin.id)
    return {"status": "ok"}
