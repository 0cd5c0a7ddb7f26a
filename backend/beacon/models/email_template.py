from sqlalchemy import Integer, String, Boolean, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from beacon.core.clock import utcnow
from beacon.models.base import Base

DEFAULT_TEMPLATE_VARIABLES = ["name", "email", "message", "unsubscribe_url"]


class EmailTemplate(Base):
    """Saved HTML body an admin can reuse for email broadcasts. Deletion only clears is_active."""
    __tablename__ = "email_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    subject: Mapped[str] = mapped_column(String(255))
    html_content: Mapped[str] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(32), default="GENERIC")
    variables: Mapped[list] = mapped_column(JSON, default=lambda: list(DEFAULT_TEMPLATE_VARIABLES))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_by_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
