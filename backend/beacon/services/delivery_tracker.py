"""Per (broadcast, recipient, channel) delivery status.

Every transition is a conditional UPDATE restricted to the statuses it may move
from, so concurrent writers can never move a row backwards.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import bindparam, insert, update
from sqlalchemy.orm import Session

from beacon.core.clock import utcnow
from beacon.models.delivery_tracking import DeliveryTracking, DeliveryStatus, Channel
from beacon.services.audience import Recipient

ERROR_MESSAGE_LIMIT = 200
# Keeps IN (...) lists under SQLite's bound-parameter limit
IN_CLAUSE_CHUNK = 900

# target status -> statuses it may be entered from
ALLOWED_FROM = {
    DeliveryStatus.SENT: (DeliveryStatus.QUEUED,),
    DeliveryStatus.FAILED: (DeliveryStatus.QUEUED,),
    DeliveryStatus.OPENED: (DeliveryStatus.SENT,),
    DeliveryStatus.CLICKED: (DeliveryStatus.SENT, DeliveryStatus.OPENED),
}

TIMESTAMP_COLUMN = {
    DeliveryStatus.SENT: "sent_at",
    DeliveryStatus.FAILED: "failed_at",
    DeliveryStatus.OPENED: "opened_at",
    DeliveryStatus.CLICKED: "clicked_at",
}


def truncate_error(message: str | None) -> str:
    text = (message or "").strip() or "Delivery failed"
    return text[:ERROR_MESSAGE_LIMIT]


class DeliveryTracker:
    def __init__(self, db: Session):
        self.db = db

    def seed(self, notification_id: int, recipients: Iterable[Recipient], channels: Iterable[str], now: datetime | None = None) -> int:
        """Create queued rows. Email rows only for recipients with a verified, subscribed address."""
        now = now or utcnow()
        channels = set(channels)
        rows = []
        for r in recipients:
            for channel in Channel.ALL:
                if channel not in channels:
                    continue
                if channel == Channel.EMAIL and not r.email_eligible:
                    continue
                rows.append({
                    "notification_id": notification_id,
                    "user_id": r.id,
                    "channel": channel,
                    "status": DeliveryStatus.QUEUED,
                    "queued_at": now,
                    "email_address": r.email if channel == Channel.EMAIL else None,
                })
        if rows:
            self.db.execute(insert(DeliveryTracking), rows)
        return len(rows)

    def _transition(self, status: str, notification_id: int, channel: str, user_ids: Iterable[int] | None, now: datetime | None, **values) -> int:
        stmt = (
            update(DeliveryTracking)
            .where(
                DeliveryTracking.notification_id == notification_id,
                DeliveryTracking.channel == channel,
                DeliveryTracking.status.in_(ALLOWED_FROM[status]),
            )
        )
        values["status"] = status
        values[TIMESTAMP_COLUMN[status]] = now or utcnow()
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        if user_ids is None:
            return self.db.execute(stmt).rowcount or 0
        ids = list(user_ids)
        changed = 0
        for i in range(0, len(ids), IN_CLAUSE_CHUNK):
            chunk = ids[i:i + IN_CLAUSE_CHUNK]
            changed += self.db.execute(stmt.where(DeliveryTracking.user_id.in_(chunk))).rowcount or 0
        return changed

    def mark_sent(self, notification_id: int, channel: str, user_ids: Iterable[int] | None = None, now: datetime | None = None) -> int:
        return self._transition(DeliveryStatus.SENT, notification_id, channel, user_ids, now)

    def mark_failed(self, notification_id: int, channel: str, user_ids: Iterable[int] | None = None, error: str | None = None, now: datetime | None = None) -> int:
        return self._transition(DeliveryStatus.FAILED, notification_id, channel, user_ids, now, error_message=truncate_error(error))

    def record_device_tokens(self, notification_id: int, tokens_by_user: dict[int, str]) -> None:
        """Snapshot the token each push recipient was reached on."""
        if not tokens_by_user:
            return
        table = DeliveryTracking.__table__
        stmt = (
            update(table)
            .where(
                table.c.notification_id == notification_id,
                table.c.channel == Channel.PUSH,
                table.c.user_id == bindparam("b_user_id"),
            )
            .values(device_token=bindparam("b_token"))
        )
        self.db.execute(stmt, [{"b_user_id": uid, "b_token": tok} for uid, tok in tokens_by_user.items()])

    def mark_opened(self, notification_id: int, user_ids: Iterable[int] | None = None, channel: str = Channel.IN_APP, now: datetime | None = None) -> int:
        return self._transition(DeliveryStatus.OPENED, notification_id, channel, user_ids, now)

    def mark_clicked(self, notification_id: int, user_ids: Iterable[int] | None = None, channel: str = Channel.IN_APP, now: datetime | None = None) -> int:
        return self._transition(DeliveryStatus.CLICKED, notification_id, channel, user_ids, now)
