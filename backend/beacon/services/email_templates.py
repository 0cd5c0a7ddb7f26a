"""Saved email templates. Deleting only clears ``is_active`` so past broadcasts stay explainable."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from beacon.models.email_template import EmailTemplate, DEFAULT_TEMPLATE_VARIABLES
from beacon.services.errors import BroadcastNotFound, BroadcastValidationError
from beacon.services.templating import TemplateRenderer

EDITABLE = ("name", "subject", "html_content", "type", "variables", "is_active")


class TemplateNotFound(BroadcastNotFound):
    def __init__(self, message: str = "Email template not found"):
        super().__init__(message)


def _check_html(renderer: TemplateRenderer, html: str) -> None:
    problem = renderer.check(html)
    if problem:
        raise BroadcastValidationError(f"Invalid email template: {problem}")


def list_active(db: Session) -> list[EmailTemplate]:
    q = select(EmailTemplate).where(EmailTemplate.is_active.is_(True)).order_by(EmailTemplate.updated_at.desc(), EmailTemplate.id.desc())
    return list(db.scalars(q))


def get(db: Session, template_id: int) -> EmailTemplate:
    t = db.get(EmailTemplate, template_id)
    if t is None:
        raise TemplateNotFound()
    return t


def get_active(db: Session, template_id: int) -> EmailTemplate:
    t = get(db, template_id)
    if not t.is_active:
        raise TemplateNotFound()
    return t


def create(db: Session, renderer: TemplateRenderer, created_by_id: int | None, **fields) -> EmailTemplate:
    _check_html(renderer, fields["html_content"])
    if not fields.get("variables"):
        fields["variables"] = list(DEFAULT_TEMPLATE_VARIABLES)
    t = EmailTemplate(created_by_id=created_by_id, **fields)
    db.add(t)
    db.commit()
    db.refresh(t)
    return t


def update(db: Session, renderer: TemplateRenderer, template_id: int, **changes) -> EmailTemplate:
    t = get(db, template_id)
    if changes.get("html_content") is not None:
        _check_html(renderer, changes["html_content"])
    for key, value in changes.items():
        if key in EDITABLE and value is not None:
            setattr(t, key, value)
    db.commit()
    db.refresh(t)
    return t


def deactivate(db: Session, template_id: int) -> EmailTemplate:
    t = get(db, template_id)
    t.is_active = False
    db.commit()
    return t
