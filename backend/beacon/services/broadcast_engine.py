"""Broadcast orchestration.

submit: validate -> resolve audience -> persist with queued tracking rows ->
NOW: in-app and push inline, email handed to the job runner;
LATER: park as SCHEDULED until the scheduler claims it, then the same pipeline.
Session work is pushed to the executor so large audiences do not stall the loop.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from beacon.core.clock import utcnow
from beacon.core.config import settings
from beacon.core.security import create_unsubscribe_token
from beacon.db.session import SessionLocal
from beacon.models.delivery_tracking import Channel, DeliveryStatus, DeliveryTracking
from beacon.models.notification import BroadcastStatus
from beacon.schemas.broadcast import BroadcastPayload, EmailBroadcast
from beacon.services import broadcast_store, email_templates
from beacon.services.audience import AudienceResolver, Recipient
from beacon.services.broadcast_store import BroadcastContent
from beacon.services.broadcast_rules import validate_submission, final_status
from beacon.services.delivery_tracker import DeliveryTracker
from beacon.services.dispatchers import InAppDispatcher, PushDispatcher, EmailDispatcher
from beacon.services.email_transport import EmailTransport, SmtpEmailTransport
from beacon.services.errors import BroadcastValidationError
from beacon.services.jobs import JobRunner, run_sync
from beacon.services.push_transport import PushTransport, HttpPushTransport
from beacon.services.templating import TemplateRenderer

logger = logging.getLogger(__name__)
audit = logging.getLogger("beacon.audit")


@dataclass
class DeliveryReport:
    in_app_created: int = 0
    push_sent: int = 0
    email_queued: int = 0
    status: str = BroadcastStatus.PROCESSING


def unsubscribe_url(user_id: int) -> str:
    base = settings.public_api_url.rstrip("/")
    return f"{base}/notifications/unsubscribe/{create_unsubscribe_token(user_id)}"


class BroadcastEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        email_transport: EmailTransport,
        push_transport: PushTransport,
        renderer: TemplateRenderer | None = None,
        jobs: JobRunner | None = None,
        push_batch_size: int = 500,
        email_batch_size: int = 10,
        email_batch_delay: float = 1.5,
    ):
        self.session_factory = session_factory
        self.renderer = renderer or TemplateRenderer(settings.app_name)
        self.jobs = jobs or JobRunner()
        self.in_app = InAppDispatcher(session_factory)
        self.push = PushDispatcher(session_factory, push_transport, push_batch_size)
        self.email = EmailDispatcher(
            session_factory,
            email_transport,
            self.renderer,
            unsubscribe_url,
            batch_size=email_batch_size,
            batch_delay=email_batch_delay,
        )

    @classmethod
    def from_settings(cls) -> "BroadcastEngine":
        return cls(
            SessionLocal,
            SmtpEmailTransport.from_settings(),
            HttpPushTransport.from_settings(),
            push_batch_size=settings.push_batch_size,
            email_batch_size=settings.email_batch_size,
            email_batch_delay=settings.email_batch_delay_seconds,
        )

    # -- submission -------------------------------------------------------

    async def submit(self, payload: BroadcastPayload, created_by_id: int | None, now: datetime | None = None) -> dict:
        now = now or utcnow()
        validate_submission(payload, now)
        if isinstance(payload, EmailBroadcast) and payload.template_id is not None and payload.html_template is None:
            payload = await run_sync(self._with_saved_template, payload)
        template = payload.email_template()
        if template and payload.channels.email:
            problem = self.renderer.check(template)
            if problem:
                raise BroadcastValidationError(f"Invalid email template: {problem}")

        notification_id, scheduled_at, recipients = await run_sync(self._persist, payload, created_by_id, now)

        channels = [c for c, on in payload.channels.model_dump().items() if on]
        if payload.send_mode == "LATER":
            audit.info(
                "broadcast.scheduled id=%s admin=%s target=%s channels=%s users=%d at=%s",
                notification_id, created_by_id, payload.target, ",".join(channels), len(recipients), scheduled_at.isoformat(),
            )
            return {
                "scheduled": True,
                "notification_id": notification_id,
                "scheduled_at": scheduled_at,
                "total_users": len(recipients),
                "status": BroadcastStatus.SCHEDULED,
            }

        audit.info(
            "broadcast.submitted id=%s admin=%s target=%s channels=%s users=%d",
            notification_id, created_by_id, payload.target, ",".join(channels), len(recipients),
        )
        report = await self.deliver(notification_id, recipients)
        return {
            "scheduled": False,
            "notification_id": notification_id,
            "target": payload.target,
            "total_users": len(recipients),
            **asdict(report),
        }

    def _with_saved_template(self, payload: EmailBroadcast) -> EmailBroadcast:
        with self.session_factory() as db:
            saved = email_templates.get_active(db, payload.template_id)
            return payload.model_copy(update={"html_template": saved.html_content})

    def _persist(self, payload: BroadcastPayload, created_by_id: int | None, now: datetime) -> tuple[int, datetime | None, list[Recipient]]:
        with self.session_factory() as db:
            recipients = AudienceResolver(db).resolve(payload.target, payload.user_ids)
            n = broadcast_store.create(db, payload, recipients, created_by_id, now=now)
            db.commit()
            return n.id, n.scheduled_at, recipients

    # -- pipeline ---------------------------------------------------------

    async def deliver(self, notification_id: int, recipients: list[Recipient]) -> DeliveryReport:
        """Run every requested channel for a PROCESSING broadcast.

        In-app and push are awaited here. The email phase is handed to the job
        runner and the report carries SENDING; the job finalizes the broadcast.
        Session work runs in the executor.
        """
        content = await run_sync(self._content, notification_id)
        report = DeliveryReport()

        if content.send_in_app:
            try:
                report.in_app_created = await run_sync(self.in_app.dispatch, content, recipients)
            except Exception:
                logger.exception("In-app channel crashed for notification %s", notification_id)
                await run_sync(self._close_channel, notification_id, Channel.IN_APP, "in-app dispatch crashed")
        if content.send_push:
            try:
                report.push_sent = await self.push.dispatch(content, recipients)
            except Exception:
                logger.exception("Push channel crashed for notification %s", notification_id)
                await run_sync(self._close_channel, notification_id, Channel.PUSH, "push dispatch crashed")

        if content.send_email:
            report.email_queued = await run_sync(self._queued_count, notification_id, Channel.EMAIL)
        if not content.send_email or report.email_queued == 0:
            report.status = await run_sync(self._finalize, notification_id, final_status(content.send_email, 0, 0))
            return report

        await run_sync(self._mark_sending, notification_id)
        self.jobs.submit(
            self._email_phase(content, recipients),
            name=f"broadcast-email-{notification_id}",
            on_error=lambda exc: run_sync(self.fail_broadcast, notification_id, exc),
        )
        report.status = BroadcastStatus.SENDING
        return report

    async def _email_phase(self, content, recipients: list[Recipient]) -> str:
        success, failure = await self.email.dispatch(content, recipients)
        status = final_status(True, success, failure)
        await run_sync(self._record_email_outcome, content.id, success, failure, status)
        logger.info("Notification %s finished with status %s (email sent=%d failed=%d)", content.id, status, success, failure)
        return status

    def _content(self, notification_id: int) -> BroadcastContent:
        with self.session_factory() as db:
            return broadcast_store.content(db, notification_id)

    def _mark_sending(self, notification_id: int) -> None:
        with self.session_factory() as db:
            broadcast_store.mark_sending(db, notification_id)
            db.commit()

    def _record_email_outcome(self, notification_id: int, success: int, failure: int, status: str) -> None:
        with self.session_factory() as db:
            broadcast_store.add_counters(db, notification_id, email_sent=success, email_failed=failure)
            broadcast_store.finalize(db, notification_id, status)
            db.commit()

    def _finalize(self, notification_id: int, status: str) -> str:
        with self.session_factory() as db:
            broadcast_store.finalize(db, notification_id, status)
            db.commit()
        logger.info("Notification %s finished with status %s", notification_id, status)
        return status

    def fail_broadcast(self, notification_id: int, exc: BaseException | None = None) -> None:
        """Terminal FAILED for a broadcast whose pipeline crashed; queued rows are closed too."""
        reason = f"dispatch aborted: {exc.__class__.__name__}" if exc else "dispatch aborted"
        with self.session_factory() as db:
            moved = broadcast_store.fail(db, notification_id)
            tracker = DeliveryTracker(db)
            for channel in Channel.ALL:
                tracker.mark_failed(notification_id, channel, error=reason)
            db.commit()
        if moved:
            logger.error("Notification %s marked FAILED (%s)", notification_id, reason)

    def _queued_count(self, notification_id: int, channel: str) -> int:
        with self.session_factory() as db:
            return len(self._queued_users(db, notification_id, channel))

    @staticmethod
    def _queued_users(db: Session, notification_id: int, channel: str) -> set[int]:
        return set(db.scalars(
            select(DeliveryTracking.user_id).where(
                DeliveryTracking.notification_id == notification_id,
                DeliveryTracking.channel == channel,
                DeliveryTracking.status == DeliveryStatus.QUEUED,
            )
        ))

    def _close_channel(self, notification_id: int, channel: str, reason: str) -> None:
        with self.session_factory() as db:
            DeliveryTracker(db).mark_failed(notification_id, channel, error=reason)
            db.commit()

    # -- scheduled path ---------------------------------------------------

    def claim(self, notification_id: int) -> bool:
        with self.session_factory() as db:
            return broadcast_store.claim(db, notification_id)

    def due(self, now: datetime, limit: int) -> list[int]:
        with self.session_factory() as db:
            return broadcast_store.due_scheduled(db, now, limit)

    async def deliver_claimed(self, notification_id: int) -> str:
        """Run the pipeline for a broadcast this process has just claimed.

        Returns SENDING while an email phase is still running in the job runner.
        """
        recipients = await run_sync(self._current_audience, notification_id)
        if not recipients:
            logger.warning("Scheduled notification %s has no active recipients left", notification_id)
            await run_sync(self.fail_broadcast, notification_id)
            return BroadcastStatus.FAILED
        report = await self.deliver(notification_id, recipients)
        return report.status

    def _current_audience(self, notification_id: int) -> list[Recipient]:
        with self.session_factory() as db:
            n = broadcast_store.get(db, notification_id)
            recipients = AudienceResolver(db).resolve_for(n)
            # Seeded rows of accounts deactivated since submission
            current = {r.id for r in recipients}
            tracker = DeliveryTracker(db)
            for channel in Channel.ALL:
                gone = self._queued_users(db, notification_id, channel) - current
                tracker.mark_failed(notification_id, channel, gone, error="recipient no longer active")
            db.commit()
        return recipients

    # -- admin operations -------------------------------------------------

    def cancel(self, notification_id: int, admin_id: int | None):
        with self.session_factory() as db:
            n = broadcast_store.cancel(db, notification_id)
        audit.info("broadcast.cancelled id=%s admin=%s", notification_id, admin_id)
        return n

    def delete(self, notification_id: int, admin_id: int | None) -> None:
        with self.session_factory() as db:
            broadcast_store.delete_draft(db, notification_id)
        audit.info("broadcast.deleted id=%s admin=%s", notification_id, admin_id)

    def purge(self, now: datetime | None = None, retention_days: int | None = None) -> tuple[int, int]:
        now = now or utcnow()
        with self.session_factory() as db:
            return broadcast_store.purge(db, now, settings.tracking_retention_days if retention_days is None else retention_days)


_engine: BroadcastEngine | None = None


def get_broadcast_engine() -> BroadcastEngine:
    global _engine
    if _engine is None:
        _engine = BroadcastEngine.from_settings()
    return _engine
