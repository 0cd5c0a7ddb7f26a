"""Persistence of the broadcast aggregate and its lifecycle transitions.

Status changes that can race (scheduler claim, cancel, finalize) are single
conditional UPDATEs; the caller learns from the rowcount whether it won.
Counter changes are ``SET col = col + :n`` so channels never overwrite each other.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy import select, update, delete, insert
from sqlalchemy.orm import Session

from beacon.core.clock import utcnow
from beacon.models.delivery_tracking import DeliveryTracking, DeliveryStatus, Channel
from beacon.models.notification import Notification, BroadcastRecipient, BroadcastStatus, SendMode
from beacon.schemas.broadcast import BroadcastPayload
from beacon.services.audience import Recipient, TARGET_MODES
from beacon.services.broadcast_rules import expires_at_for
from beacon.services.delivery_tracker import DeliveryTracker
from beacon.services.errors import BroadcastNotFound, BroadcastStateError

logger = logging.getLogger(__name__)

COUNTERS = ("in_app_created", "push_sent", "email_sent", "email_failed")


@dataclass(frozen=True)
class BroadcastContent:
    """Detached copy of what the dispatchers need; safe to use after the session closes."""
    id: int
    title: str
    message: str
    type: str
    priority: str
    cta_url: str | None
    banner_url: str | None
    email_subject: str | None
    email_template: str | None
    send_in_app: bool
    send_email: bool
    send_push: bool

    @property
    def channels(self) -> list[str]:
        out = []
        if self.send_in_app:
            out.append(Channel.IN_APP)
        if self.send_push:
            out.append(Channel.PUSH)
        if self.send_email:
            out.append(Channel.EMAIL)
        return out


def _content_of(n: Notification) -> BroadcastContent:
    return BroadcastContent(
        id=n.id,
        title=n.title,
        message=n.message or "",
        type=n.type,
        priority=n.priority,
        cta_url=n.cta_url,
        banner_url=n.banner_url,
        email_subject=n.email_subject,
        email_template=n.email_template,
        send_in_app=bool(n.send_in_app),
        send_email=bool(n.send_email),
        send_push=bool(n.send_push),
    )


def create(db: Session, payload: BroadcastPayload, recipients: list[Recipient], created_by_id: int | None, now: datetime | None = None) -> Notification:
    """Persist a validated submission with its audience snapshot and queued tracking rows.

    The caller commits.
    """
    now = now or utcnow()
    later = payload.send_mode == "LATER"
    target = TARGET_MODES[payload.target]
    cta = payload.cta
    n = Notification(
        title=payload.display_title(),
        message=payload.body(),
        type=payload.type,
        priority=payload.priority,
        banner_url=payload.banner_url,
        cta_label=cta.label if cta else None,
        cta_url=cta.url if cta else None,
        target=target,
        target_user_id=recipients[0].id if payload.target == "SINGLE" else None,
        send_in_app=payload.channels.in_app,
        send_email=payload.channels.email,
        send_push=payload.channels.push,
        send_mode=SendMode.LATER if later else SendMode.NOW,
        scheduled_at=payload.scheduled_at if later else None,
        expiry_days=payload.expiry_days,
        expires_at=expires_at_for(payload.expiry_days, payload.scheduled_at if later else now),
        email_subject=payload.email_subject() if payload.channels.email else None,
        email_template=payload.email_template(),
        total_targets=len(recipients),
        status=BroadcastStatus.SCHEDULED if later else BroadcastStatus.PROCESSING,
        created_by_id=created_by_id,
        created_at=now,
        updated_at=now,
    )
    db.add(n)
    db.flush()
    if payload.target == "SELECTED":
        db.execute(insert(BroadcastRecipient), [{"notification_id": n.id, "user_id": r.id} for r in recipients])
    DeliveryTracker(db).seed(n.id, recipients, _content_of(n).channels, now=now)
    return n


def get(db: Session, notification_id: int) -> Notification:
    n = db.get(Notification, notification_id)
    if not n:
        raise BroadcastNotFound()
    return n


def content(db: Session, notification_id: int) -> BroadcastContent:
    return _content_of(get(db, notification_id))


def _set_status(db: Session, notification_id: int, status: str, allowed_from: tuple[str, ...], **values) -> bool:
    res = db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status.in_(allowed_from))
        .values(status=status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return (res.rowcount or 0) == 1


def claim(db: Session, notification_id: int) -> bool:
    """SCHEDULED -> PROCESSING. Only one caller can ever get True for a given broadcast."""
    won = _set_status(db, notification_id, BroadcastStatus.PROCESSING, (BroadcastStatus.SCHEDULED,))
    db.commit()
    return won


def cancel(db: Session, notification_id: int) -> Notification:
    n = get(db, notification_id)
    if n.status != BroadcastStatus.SCHEDULED or n.send_mode != SendMode.LATER:
        raise BroadcastStateError("Only scheduled notifications can be cancelled")
    ok = _set_status(
        db, notification_id, BroadcastStatus.CANCELLED, (BroadcastStatus.SCHEDULED,),
        send_mode=SendMode.CANCELLED,
    )
    db.commit()
    if not ok:
        # Claimed by the scheduler between the read and the update
        raise BroadcastStateError("Only scheduled notifications can be cancelled")
    db.refresh(n)
    return n


def mark_sending(db: Session, notification_id: int) -> bool:
    return _set_status(db, notification_id, BroadcastStatus.SENDING, (BroadcastStatus.PROCESSING,))


def add_counters(db: Session, notification_id: int, **increments: int) -> None:
    values = {}
    for name, n in increments.items():
        if name not in COUNTERS:
            raise ValueError(f"Unknown counter {name}")
        if n:
            column = getattr(Notification, name)
            values[name] = column + n
    if not values:
        return
    db.execute(
        update(Notification)
        .where(Notification.id == notification_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def finalize(db: Session, notification_id: int, status: str, now: datetime | None = None) -> bool:
    """Move an in-flight broadcast to its terminal status. No-op if it already left the pipeline."""
    return _set_status(db, notification_id, status, BroadcastStatus.IN_FLIGHT, completed_at=now or utcnow())


def fail(db: Session, notification_id: int, now: datetime | None = None) -> bool:
    return finalize(db, notification_id, BroadcastStatus.FAILED, now=now)


def due_scheduled(db: Session, now: datetime, limit: int) -> list[int]:
    q = (
        select(Notification.id)
        .where(
            Notification.status == BroadcastStatus.SCHEDULED,
            Notification.send_mode == SendMode.LATER,
            Notification.scheduled_at <= now,
        )
        .order_by(Notification.scheduled_at.asc(), Notification.id.asc())
        .limit(limit)
    )
    return list(db.scalars(q))


def list_scheduled(db: Session, now: datetime | None = None) -> list[Notification]:
    now = now or utcnow()
    q = (
        select(Notification)
        .where(
            Notification.status == BroadcastStatus.SCHEDULED,
            Notification.send_mode == SendMode.LATER,
            Notification.scheduled_at > now,
        )
        .order_by(Notification.scheduled_at.asc())
    )
    return list(db.scalars(q))


def delete_draft(db: Session, notification_id: int) -> None:
    n = get(db, notification_id)
    if n.status not in (BroadcastStatus.DRAFT, BroadcastStatus.CANCELLED):
        raise BroadcastStateError("Only draft or cancelled notifications can be deleted")
    db.delete(n)
    db.commit()


def purge(db: Session, now: datetime, retention_days: int) -> tuple[int, int]:
    """Drop old settled tracking rows and expired finished broadcasts. Returns (tracking, notifications)."""
    cutoff = now - timedelta(days=retention_days)
    tracking = db.execute(
        delete(DeliveryTracking)
        .where(
            DeliveryTracking.status.in_((DeliveryStatus.SENT, DeliveryStatus.FAILED)),
            DeliveryTracking.queued_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    notifications = db.execute(
        delete(Notification)
        .where(
            Notification.status.in_((BroadcastStatus.COMPLETED, BroadcastStatus.PARTIAL, BroadcastStatus.FAILED)),
            Notification.expires_at.is_not(None),
            Notification.expires_at < now,
        )
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    db.commit()
    return tracking, notifications
