from sqlalchemy import Integer, String, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from beacon.core.clock import utcnow
from beacon.models.base import Base


class Channel:
    IN_APP = "in_app"
    PUSH = "push"
    EMAIL = "email"

    ALL = (IN_APP, PUSH, EMAIL)


class DeliveryStatus:
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"

    ALL = (QUEUED, SENT, FAILED, OPENED, CLICKED)
    DELIVERED = (SENT, OPENED, CLICKED)


class DeliveryTracking(Base):
    __tablename__ = "delivery_tracking"
    __table_args__ = (
        UniqueConstraint("notification_id", "user_id", "channel", name="uq_delivery_notification_user_channel"),
        Index("ix_delivery_tracking_notification_channel", "notification_id", "channel"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    notification_id: Mapped[int] = mapped_column(Integer, ForeignKey("notifications.id", ondelete="CASCADE"))
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    channel: Mapped[str] = mapped_column(String(16))  # in_app | push | email
    status: Mapped[str] = mapped_column(String(16), default=DeliveryStatus.QUEUED)  # queued|sent|failed|opened|clicked
    queued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    clicked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_token: Mapped[str | None] = mapped_column(String(512), nullable=True)
