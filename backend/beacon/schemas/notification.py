from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class FeedItemOut(BaseModel):
    """One inbox entry joined with its broadcast content."""
    id: int
    notification_id: int
    title: str
    message: str
    type: str
    priority: str
    banner_url: str | None = None
    cta_label: str | None = None
    cta_url: str | None = None
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime
    expires_at: datetime | None = None


class FeedPage(BaseModel):
    items: list[FeedItemOut]
    total: int
    unread_count: int
    page: int
    limit: int
    pages: int


class EmailSubscription(BaseModel):
    email_subscribed: bool


class PushRegister(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    platform: Literal["WEB", "ANDROID", "IOS"] = "WEB"
    device_id: str | None = Field(None, max_length=255)


class PushRemove(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)


class NotificationAdminOut(BaseModel):
    id: int
    title: str
    message: str
    type: str
    priority: str
    target: str
    target_user_id: int | None
    send_in_app: bool
    send_email: bool
    send_push: bool
    send_mode: str
    scheduled_at: datetime | None
    expiry_days: int
    expires_at: datetime | None
    cta_label: str | None
    cta_url: str | None
    banner_url: str | None
    email_subject: str | None
    total_targets: int
    in_app_created: int
    push_sent: int
    email_sent: int
    email_failed: int
    status: str
    created_by_id: int | None
    created_at: datetime
    completed_at: datetime | None

    class Config:
        from_attributes = True
