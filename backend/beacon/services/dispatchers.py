"""Channel dispatchers: in-app, push, email.

Each dispatcher owns its own sessions and its own counters, and records every
outcome on the tracking rows. None of them raises for a delivery failure, so
one channel can never stop another. The async dispatchers run their session
work through run_sync; InAppDispatcher.dispatch is blocking and the engine
calls it the same way.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Callable, Iterable, Iterator, Sequence

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from beacon.core.clock import utcnow
from beacon.models.delivery_tracking import Channel, DeliveryStatus, DeliveryTracking
from beacon.models.push_token import PushToken
from beacon.models.user import User
from beacon.models.user_notification import UserNotification
from beacon.services import broadcast_store
from beacon.services.audience import Recipient
from beacon.services.broadcast_store import BroadcastContent
from beacon.services.delivery_tracker import DeliveryTracker, IN_CLAUSE_CHUNK
from beacon.services.email_transport import EmailTransport
from beacon.services.jobs import run_sync
from beacon.services.push_transport import PushTransport
from beacon.services.templating import TemplateRenderer

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class InAppDispatcher:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def dispatch(self, content: BroadcastContent, recipients: list[Recipient], now: datetime | None = None) -> int:
        """Create inbox rows for recipients that do not have one yet. Returns rows created."""
        now = now or utcnow()
        ids = [r.id for r in recipients]
        with self.session_factory() as db:
            try:
                existing: set[int] = set()
                for chunk in chunked(ids, IN_CLAUSE_CHUNK):
                    existing.update(db.scalars(
                        select(UserNotification.user_id).where(
                            UserNotification.notification_id == content.id,
                            UserNotification.user_id.in_(chunk),
                        )
                    ))
                rows = [
                    {"user_id": uid, "notification_id": content.id, "is_read": False, "created_at": now}
                    for uid in ids if uid not in existing
                ]
                if rows:
                    db.execute(insert(UserNotification), rows)
                DeliveryTracker(db).mark_sent(content.id, Channel.IN_APP, ids, now=now)
                broadcast_store.add_counters(db, content.id, in_app_created=len(rows))
                db.commit()
            except Exception as e:
                db.rollback()
                logger.exception("In-app dispatch failed for notification %s", content.id)
                DeliveryTracker(db).mark_failed(content.id, Channel.IN_APP, ids, error=str(e), now=now)
                db.commit()
                return 0
        logger.info("In-app: notification=%s created=%d skipped=%d", content.id, len(rows), len(existing))
        return len(rows)


class PushDispatcher:
    def __init__(self, session_factory: SessionFactory, transport: PushTransport, batch_size: int = 500):
        self.session_factory = session_factory
        self.transport = transport
        self.batch_size = max(1, batch_size)

    def _tokens(self, user_ids: Iterable[int]) -> dict[str, int]:
        """token -> owning user, read at send time."""
        owners: dict[str, int] = {}
        ids = list(user_ids)
        with self.session_factory() as db:
            for chunk in chunked(ids, IN_CLAUSE_CHUNK):
                q = select(PushToken.token, PushToken.user_id).where(PushToken.user_id.in_(chunk)).order_by(PushToken.id.asc())
                for token, uid in db.execute(q):
                    owners[token] = uid
        return owners

    @staticmethod
    def payload(content: BroadcastContent) -> tuple[dict, dict[str, str]]:
        notification = {"title": content.title, "body": content.message}
        if content.banner_url:
            notification["image"] = content.banner_url
        data = {
            "notification_id": str(content.id),
            "type": content.type,
            "priority": content.priority,
        }
        if content.cta_url:
            data["cta_url"] = content.cta_url
        return notification, data

    async def dispatch(self, content: BroadcastContent, recipients: list[Recipient], now: datetime | None = None) -> int:
        """Send to every registered device of the audience. Returns the gateway's success count."""
        owners = await run_sync(self._tokens, [r.id for r in recipients])
        tokens = list(owners)
        notification, data = self.payload(content)

        reached: dict[int, str] = {}  # user -> first token that got through
        errors: dict[int, str] = {}
        pushed = 0
        for batch in chunked(tokens, self.batch_size):
            batch_users = {owners[t] for t in batch}
            try:
                result = await self.transport.send_multicast(list(batch), notification, data)
            except Exception as e:
                logger.warning("Push batch of %d token(s) failed for notification %s: %s", len(batch), content.id, e)
                for uid in batch_users:
                    errors.setdefault(uid, str(e) or e.__class__.__name__)
                continue
            pushed += result.success_count
            if result.token_results is not None:
                for token, error in result.token_results.items():
                    uid = owners.get(token)
                    if uid is None:
                        continue
                    if error is None:
                        reached.setdefault(uid, token)
                    else:
                        errors.setdefault(uid, error)
            elif result.success_count > 0:
                # Batch-level counts only: the batch as a whole got through
                for token in batch:
                    reached.setdefault(owners[token], token)
            else:
                for uid in batch_users:
                    errors.setdefault(uid, "push batch rejected")

        with_token = set(owners.values())
        no_token = [r.id for r in recipients if r.id not in with_token]
        failed = {uid: err for uid, err in errors.items() if uid not in reached}
        for uid in with_token - reached.keys() - failed.keys():
            failed[uid] = "no delivery result from push gateway"

        await run_sync(self._record, content.id, reached, failed, no_token, pushed, now or utcnow())
        logger.info(
            "Push: notification=%s tokens=%d sent=%d reached_users=%d failed_users=%d no_token=%d",
            content.id, len(tokens), pushed, len(reached), len(failed), len(no_token),
        )
        return pushed

    def _record(self, notification_id: int, reached: dict[int, str], failed: dict[int, str], no_token: list[int], pushed: int, when: datetime) -> None:
        with self.session_factory() as db:
            tracker = DeliveryTracker(db)
            tracker.record_device_tokens(notification_id, reached)
            tracker.mark_sent(notification_id, Channel.PUSH, list(reached), now=when)
            tracker.mark_failed(notification_id, Channel.PUSH, no_token, error="no push token", now=when)
            by_error: dict[str, list[int]] = {}
            for uid, err in failed.items():
                by_error.setdefault(err, []).append(uid)
            for err, uids in by_error.items():
                tracker.mark_failed(notification_id, Channel.PUSH, uids, error=err, now=when)
            broadcast_store.add_counters(db, notification_id, push_sent=pushed)
            db.commit()


class EmailDispatcher:
    def __init__(
        self,
        session_factory: SessionFactory,
        transport: EmailTransport,
        renderer: TemplateRenderer,
        unsubscribe_url: Callable[[int], str],
        batch_size: int = 10,
        batch_delay: float = 1.5,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.renderer = renderer
        self.unsubscribe_url = unsubscribe_url
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay

    def targets(self, content: BroadcastContent, recipients: list[Recipient]) -> list[Recipient]:
        """Recipients with a queued email row who are still eligible now.

        Queued rows whose owner unsubscribed or lost verification since
        submission are closed as failed here.
        """
        with self.session_factory() as db:
            queued = set(db.scalars(
                select(DeliveryTracking.user_id).where(
                    DeliveryTracking.notification_id == content.id,
                    DeliveryTracking.channel == Channel.EMAIL,
                    DeliveryTracking.status == DeliveryStatus.QUEUED,
                )
            ))
            # Flags are re-read: the recipient list may predate an opt-out
            eligible: set[int] = set()
            for chunk in chunked(list(queued), IN_CLAUSE_CHUNK):
                eligible.update(db.scalars(
                    select(User.id).where(
                        User.id.in_(chunk),
                        User.email_verified.is_(True),
                        User.email_subscribed.is_(True),
                    )
                ))
            targets = [r for r in recipients if r.id in eligible and r.email]
            dropped = queued - {r.id for r in targets}
            if dropped:
                DeliveryTracker(db).mark_failed(content.id, Channel.EMAIL, dropped, error="recipient no longer eligible for email")
                db.commit()
        return targets

    async def _send_one(self, content: BroadcastContent, r: Recipient) -> str | None:
        try:
            unsubscribe_url = self.unsubscribe_url(r.id)
            html = self.renderer.render(content.email_template, self.renderer.variables(
                name=r.name,
                email=r.email,
                message=content.message,
                unsubscribe_url=unsubscribe_url,
                notification_id=content.id,
            ))
            await self.transport.send_html(r.email, content.email_subject or content.title, html, unsubscribe_url=unsubscribe_url)
        except Exception as e:
            logger.warning("Email to user %s failed for notification %s: %s", r.id, content.id, e)
            return str(e) or e.__class__.__name__
        return None

    def _record(self, content: BroadcastContent, outcomes: list[tuple[Recipient, str | None]]) -> None:
        sent = [r.id for r, err in outcomes if err is None]
        failed = [(r.id, err) for r, err in outcomes if err is not None]
        now = utcnow()
        with self.session_factory() as db:
            tracker = DeliveryTracker(db)
            tracker.mark_sent(content.id, Channel.EMAIL, sent, now=now)
            for uid, err in failed:
                tracker.mark_failed(content.id, Channel.EMAIL, [uid], error=err, now=now)
            db.commit()

    async def dispatch(self, content: BroadcastContent, recipients: list[Recipient]) -> tuple[int, int]:
        """Send in rate-limited batches. Returns (success, failure)."""
        targets = await run_sync(self.targets, content, recipients)
        success = failure = 0
        batches = list(chunked(targets, self.batch_size))
        for i, batch in enumerate(batches):
            errors = await asyncio.gather(*(self._send_one(content, r) for r in batch))
            outcomes = list(zip(batch, errors))
            await run_sync(self._record, content, outcomes)
            ok = sum(1 for err in errors if err is None)
            success += ok
            failure += len(batch) - ok
            logger.info("Email batch %d/%d for notification %s: sent=%d failed=%d", i + 1, len(batches), content.id, ok, len(batch) - ok)
            if i < len(batches) - 1 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
        logger.info("Email: notification=%s targets=%d sent=%d failed=%d", content.id, len(targets), success, failure)
        return success, failure
