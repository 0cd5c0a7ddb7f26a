from sqlalchemy import Integer, String, Boolean, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime

from beacon.core.clock import utcnow
from beacon.models.base import Base


class BroadcastStatus:
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    PROCESSING = "PROCESSING"
    SENDING = "SENDING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    # States a dispatch pipeline may still finalize from
    IN_FLIGHT = (PROCESSING, SENDING)


class SendMode:
    NOW = "NOW"
    LATER = "LATER"
    CANCELLED = "CANCELLED"


class TargetMode:
    ALL_USERS = "ALL_USERS"
    SELECTED_USERS = "SELECTED_USERS"
    SINGLE_USER = "SINGLE_USER"


class Notification(Base):
    """One admin broadcast: content, channel flags, schedule, counters and lifecycle status."""
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_due", "status", "scheduled_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(32), default="SYSTEM")
    priority: Mapped[str] = mapped_column(String(16), default="NORMAL")
    banner_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    cta_label: Mapped[str | None] = mapped_column(String(120), nullable=True)
    cta_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    target: Mapped[str] = mapped_column(String(32), default=TargetMode.ALL_USERS)
    target_user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    send_in_app: Mapped[bool] = mapped_column(Boolean, default=True)
    send_email: Mapped[bool] = mapped_column(Boolean, default=False)
    send_push: Mapped[bool] = mapped_column(Boolean, default=False)

    send_mode: Mapped[str] = mapped_column(String(16), default=SendMode.NOW)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expiry_days: Mapped[int] = mapped_column(Integer, default=7)  # 0 = never expires
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    email_subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_template: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_targets: Mapped[int] = mapped_column(Integer, default=0)
    in_app_created: Mapped[int] = mapped_column(Integer, default=0)
    push_sent: Mapped[int] = mapped_column(Integer, default=0)
    email_sent: Mapped[int] = mapped_column(Integer, default=0)
    email_failed: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(String(16), default=BroadcastStatus.DRAFT, index=True)
    created_by_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    recipients = relationship("BroadcastRecipient", cascade="all, delete-orphan", passive_deletes=True)
    deliveries = relationship("DeliveryTracking", cascade="all, delete-orphan", passive_deletes=True)
    user_notifications = relationship("UserNotification", back_populates="notification", cascade="all, delete-orphan", passive_deletes=True)


class BroadcastRecipient(Base):
    """Audience snapshot taken at submission time."""
    __tablename__ = "broadcast_recipients"

    notification_id: Mapped[int] = mapped_column(Integer, ForeignKey("notifications.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
