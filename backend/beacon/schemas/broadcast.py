from datetime import datetime
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Discriminator, Field, RootModel, Tag, field_validator, model_validator

from beacon.core.clock import to_naive_utc

NotificationType = Literal["SYSTEM", "SECURITY", "ANNOUNCEMENT", "MARKETING"]
Priority = Literal["NORMAL", "HIGH", "URGENT"]


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class Channels(BaseModel):
    in_app: bool = True
    email: bool = False
    push: bool = False

    def any(self) -> bool:
        return self.in_app or self.email or self.push


class CallToAction(BaseModel):
    label: str | None = Field(None, max_length=120)
    url: str | None = None

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str | None) -> str | None:
        if _blank(v):
            return None
        v = v.strip()
        if v.startswith("/"):
            # In-app relative path; '//host' would be protocol-relative
            if v.startswith("//"):
                raise ValueError("Invalid CTA URL format (https://... or /path)")
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("CTA URL must be an absolute http(s) URL or an in-app /path")
        return v


class _BroadcastBase(BaseModel):
    target: Literal["ALL", "SELECTED", "SINGLE"]
    user_ids: list[int] = Field(default_factory=list)
    channels: Channels = Field(default_factory=Channels)
    send_mode: Literal["NOW", "LATER"] = "NOW"
    scheduled_at: datetime | None = None
    expiry_days: int = Field(7, ge=0, le=365)
    cta: CallToAction | None = None
    type: NotificationType = "SYSTEM"
    priority: Priority = "NORMAL"
    banner_url: str | None = None

    @field_validator("scheduled_at")
    @classmethod
    def _naive_utc(cls, v: datetime | None) -> datetime | None:
        return to_naive_utc(v) if v is not None else None


class NotificationBroadcast(_BroadcastBase):
    """In-app/push style broadcast: title and message are required."""
    mode: Literal["notification"] = "notification"
    title: str = Field(..., max_length=255)
    message: str

    @field_validator("title", "message")
    @classmethod
    def _not_blank(cls, v: str, info) -> str:
        if _blank(v):
            raise ValueError(f"Notification {info.field_name} is required")
        return v.strip()

    def display_title(self) -> str:
        return self.title

    def body(self) -> str:
        return self.message

    def email_subject(self) -> str:
        return self.title

    def email_template(self) -> str | None:
        return None


class EmailBroadcast(_BroadcastBase):
    """Email style broadcast: subject plus a message, an HTML template or a saved template."""
    mode: Literal["email"]
    subject: str = Field(..., max_length=255)
    message: str | None = None
    html_template: str | None = None
    # Saved library template; an inline html_template takes precedence
    template_id: int | None = None
    title: str | None = Field(None, max_length=255)

    @field_validator("subject")
    @classmethod
    def _subject_not_blank(cls, v: str) -> str:
        if _blank(v):
            raise ValueError("Email subject is required")
        return v.strip()

    @model_validator(mode="after")
    def _content_present(self) -> "EmailBroadcast":
        if _blank(self.message) and _blank(self.html_template) and self.template_id is None:
            raise ValueError("Email content (message, html_template or template_id) is required")
        if _blank(self.html_template):
            self.html_template = None
        return self

    def display_title(self) -> str:
        return self.title.strip() if not _blank(self.title) else self.subject

    def body(self) -> str:
        return (self.message or "").strip()

    def email_subject(self) -> str:
        return self.subject

    def email_template(self) -> str | None:
        return self.html_template


def _mode_of(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("mode") or "notification"
    return getattr(value, "mode", "notification")


BroadcastSubmission = Annotated[
    Union[
        Annotated[NotificationBroadcast, Tag("notification")],
        Annotated[EmailBroadcast, Tag("email")],
    ],
    Discriminator(_mode_of),
]

BroadcastPayload = Union[NotificationBroadcast, EmailBroadcast]


class BroadcastRequest(RootModel[BroadcastSubmission]):
    """Request body of the submit endpoint; `.root` is the concrete payload variant."""


class ScheduledBroadcastOut(BaseModel):
    id: int
    title: str
    type: str
    priority: str
    target: str
    status: str
    scheduled_at: datetime | None
    total_targets: int
    send_in_app: bool
    send_email: bool
    send_push: bool
    created_by_id: int | None
    created_at: datetime

    class Config:
        from_attributes = True


class CancelOut(BaseModel):
    id: int
    status: str
    send_mode: str
