"""Audience resolution: target mode + ids -> active, deduplicated recipients."""
from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from beacon.models.notification import Notification, BroadcastRecipient, TargetMode
from beacon.models.user import User
from beacon.services.errors import BroadcastValidationError, EmptyAudienceError

logger = logging.getLogger(__name__)

# Request-level target names -> persisted target modes
TARGET_MODES = {
    "ALL": TargetMode.ALL_USERS,
    "SELECTED": TargetMode.SELECTED_USERS,
    "SINGLE": TargetMode.SINGLE_USER,
}


@dataclass(frozen=True)
class Recipient:
    id: int
    email: str | None
    name: str | None
    email_subscribed: bool
    email_verified: bool

    @property
    def email_eligible(self) -> bool:
        return bool(self.email) and self.email_verified and self.email_subscribed


def check_target(target: str, user_ids: list[int]) -> None:
    """Validate the target/recipient-count combination without touching the database."""
    if target not in TARGET_MODES:
        raise BroadcastValidationError("Invalid target. Use ALL | SELECTED | SINGLE")
    if target == "SINGLE" and len(user_ids) != 1:
        raise BroadcastValidationError("For SINGLE target, user_ids must contain exactly 1 user id")
    if target == "SELECTED" and not user_ids:
        raise BroadcastValidationError("For SELECTED target, user_ids is required")


class AudienceResolver:
    def __init__(self, db: Session):
        self.db = db

    def resolve(self, target: str, user_ids: list[int] | None = None) -> list[Recipient]:
        user_ids = list(user_ids or [])
        check_target(target, user_ids)
        q = select(User).where(User.is_active.is_(True))
        if target != "ALL":
            q = q.where(User.id.in_(set(user_ids)))
        recipients = self._load(q)
        if not recipients:
            raise EmptyAudienceError()
        logger.info("Resolved %d recipient(s) for target=%s", len(recipients), target)
        return recipients

    def resolve_for(self, notification: Notification) -> list[Recipient]:
        """Re-resolve a persisted broadcast's audience; accounts deactivated since submission drop out."""
        q = select(User).where(User.is_active.is_(True))
        if notification.target == TargetMode.SINGLE_USER:
            if notification.target_user_id is None:
                return []
            q = q.where(User.id == notification.target_user_id)
        elif notification.target == TargetMode.SELECTED_USERS:
            snapshot = select(BroadcastRecipient.user_id).where(BroadcastRecipient.notification_id == notification.id)
            q = q.where(User.id.in_(snapshot))
        return self._load(q)

    def _load(self, q) -> list[Recipient]:
        seen: set[int] = set()
        out: list[Recipient] = []
        for u in self.db.scalars(q.order_by(User.id.asc())):
            if u.id in seen:
                continue
            seen.add(u.id)
            out.append(Recipient(
                id=u.id,
                email=u.email,
                name=u.full_name,
                email_subscribed=bool(u.email_subscribed),
                email_verified=bool(u.email_verified),
            ))
        return out
