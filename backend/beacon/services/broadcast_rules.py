from datetime import datetime, timedelta

from beacon.models.notification import BroadcastStatus
from beacon.schemas.broadcast import BroadcastPayload
from beacon.services.audience import check_target
from beacon.services.errors import BroadcastValidationError

MIN_SCHEDULE_LEAD = timedelta(seconds=60)


def validate_submission(payload: BroadcastPayload, now: datetime) -> None:
    """Checks that need the current time or cross several fields.

    Field-level problems (blank content, expiry range, CTA URL) are rejected
    earlier by the request schema.
    """
    if not payload.channels.any():
        raise BroadcastValidationError("At least one channel must be selected")
    check_target(payload.target, payload.user_ids)
    if payload.send_mode == "LATER":
        if payload.scheduled_at is None:
            raise BroadcastValidationError("scheduled_at is required when send_mode is LATER")
        if payload.scheduled_at < now + MIN_SCHEDULE_LEAD:
            raise BroadcastValidationError("Scheduled time must be at least 1 minute in the future")


def expires_at_for(expiry_days: int, start: datetime) -> datetime | None:
    if not expiry_days:
        return None
    return start + timedelta(days=expiry_days)


def final_status(email_requested: bool, success: int, failure: int) -> str:
    """Lifecycle status once every channel has finished."""
    if not email_requested or failure == 0:
        return BroadcastStatus.COMPLETED
    if success > 0:
        return BroadcastStatus.PARTIAL
    return BroadcastStatus.FAILED
