import asyncio
from datetime import timedelta

import pytest

from beacon.core.clock import utcnow
from beacon.models.delivery_tracking import DeliveryTracking, Channel, DeliveryStatus
from beacon.models.notification import Notification, BroadcastStatus, SendMode
from beacon.models.user import User
from beacon.models.user_notification import UserNotification
from beacon.services import broadcast_store
from beacon.services.broadcast_scheduler import run_due_broadcasts, cleanup_expired
from beacon.services.errors import BroadcastStateError

from conftest import payload


def _schedule(engine, now, minutes=5, **fields):
    at = (now + timedelta(minutes=minutes)).isoformat()
    result = asyncio.run(engine.submit(payload(send_mode="LATER", scheduled_at=at, **fields), None, now=now))
    return result["notification_id"]


def _tick(engine, now):
    async def tick():
        fired = await run_due_broadcasts(engine, now=now)
        await engine.jobs.drain()
        return fired
    return asyncio.run(tick())


def test_claim_succeeds_once(db, engine, make_user):
    make_user()
    nid = _schedule(engine, utcnow())
    assert engine.claim(nid) is True
    assert engine.claim(nid) is False


def test_not_due_yet_is_left_alone(db, engine, make_user):
    make_user()
    now = utcnow()
    nid = _schedule(engine, now)
    assert _tick(engine, now + timedelta(minutes=4)) == {}
    assert db.get(Notification, nid).status == BroadcastStatus.SCHEDULED


def test_due_broadcast_fires_once(db, engine, make_user, email_transport):
    make_user()
    make_user()
    now = utcnow()
    nid = _schedule(engine, now, channels={"in_app": True, "email": True})

    later = now + timedelta(minutes=6)
    # Email runs in the job runner; _tick drains it before returning
    assert _tick(engine, later) == {nid: BroadcastStatus.SENDING}
    assert _tick(engine, later) == {}

    n = db.get(Notification, nid)
    assert n.status == BroadcastStatus.COMPLETED
    assert n.in_app_created == 2
    assert n.email_sent == 2
    assert len(email_transport.sent) == 2


def test_cancelled_broadcast_never_dispatches(db, engine, make_user, email_transport):
    make_user()
    now = utcnow()
    nid = _schedule(engine, now, channels={"in_app": True, "email": True})

    n = engine.cancel(nid, admin_id=None)
    assert n.status == BroadcastStatus.CANCELLED
    assert n.send_mode == SendMode.CANCELLED

    assert _tick(engine, now + timedelta(hours=1)) == {}
    assert email_transport.sent == []
    assert db.query(UserNotification).count() == 0
    statuses = {r.status for r in db.query(DeliveryTracking).filter_by(notification_id=nid)}
    assert statuses == {DeliveryStatus.QUEUED}


def test_cancel_twice_or_after_claim_rejected(db, engine, make_user):
    make_user()
    now = utcnow()
    nid = _schedule(engine, now)
    engine.cancel(nid, admin_id=None)
    with pytest.raises(BroadcastStateError):
        engine.cancel(nid, admin_id=None)

    other = _schedule(engine, now, title="Second")
    assert engine.claim(other)
    with pytest.raises(BroadcastStateError):
        engine.cancel(other, admin_id=None)


def test_deactivated_recipients_are_marked_failed(db, engine, make_user):
    stays = make_user()
    leaves = make_user()
    now = utcnow()
    nid = _schedule(engine, now, target="SELECTED", user_ids=[stays.id, leaves.id])

    db.get(User, leaves.id).is_active = False
    db.commit()

    assert _tick(engine, now + timedelta(minutes=6)) == {nid: BroadcastStatus.COMPLETED}
    db.expire_all()
    rows = {r.user_id: r for r in db.query(DeliveryTracking).filter_by(notification_id=nid, channel=Channel.IN_APP)}
    assert rows[stays.id].status == DeliveryStatus.SENT
    assert rows[leaves.id].status == DeliveryStatus.FAILED
    assert rows[leaves.id].error_message == "recipient no longer active"
    assert db.query(UserNotification).filter_by(notification_id=nid).count() == 1


def test_everyone_gone_fails_the_broadcast(db, engine, make_user):
    u = make_user()
    now = utcnow()
    nid = _schedule(engine, now, target="SINGLE", user_ids=[u.id])
    db.get(User, u.id).is_active = False
    db.commit()

    assert _tick(engine, now + timedelta(minutes=6)) == {nid: BroadcastStatus.FAILED}
    db.expire_all()
    assert db.get(Notification, nid).status == BroadcastStatus.FAILED


def test_crash_in_pipeline_fails_only_that_broadcast(db, engine, make_user, monkeypatch):
    make_user()
    now = utcnow()
    first = _schedule(engine, now, minutes=2)
    second = _schedule(engine, now, minutes=3, title="Second")
    real = engine.deliver_claimed

    async def flaky(nid):
        if nid == first:
            raise RuntimeError("database went away")
        return await real(nid)

    monkeypatch.setattr(engine, "deliver_claimed", flaky)
    fired = _tick(engine, now + timedelta(minutes=10))
    assert fired == {first: BroadcastStatus.FAILED, second: BroadcastStatus.COMPLETED}
    db.expire_all()
    assert db.get(Notification, first).status == BroadcastStatus.FAILED


def test_list_scheduled_only_future(db, engine, make_user):
    make_user()
    now = utcnow()
    soon = _schedule(engine, now, minutes=5)
    later = _schedule(engine, now, minutes=50, title="Later")
    cancelled = _schedule(engine, now, minutes=10, title="Cancelled")
    engine.cancel(cancelled, admin_id=None)

    assert [n.id for n in broadcast_store.list_scheduled(db, now)] == [soon, later]
    assert [n.id for n in broadcast_store.list_scheduled(db, now + timedelta(minutes=20))] == [later]


def test_cleanup_purges_expired_and_old_tracking(db, engine, make_user):
    make_user()
    now = utcnow()
    old = asyncio.run(engine.submit(payload(expiry_days=1), None, now=now - timedelta(days=40)))["notification_id"]
    fresh = asyncio.run(engine.submit(payload(title="Fresh", expiry_days=0), None, now=now))["notification_id"]

    tracking, notifications = cleanup_expired(engine, now)
    assert notifications == 1
    assert tracking >= 1
    db.expire_all()
    assert db.get(Notification, old) is None
    assert db.get(Notification, fresh) is not None
    assert db.query(DeliveryTracking).filter_by(notification_id=fresh).count() == 1


class HeldEmailTransport:
    """Holds every send until released."""

    def __init__(self):
        self.release = asyncio.Event()
        self.sent: list[str] = []

    async def send_html(self, to, subject, html, *, unsubscribe_url=None):
        await self.release.wait()
        self.sent.append(to)


def test_long_email_phase_does_not_hold_the_tick(db, engine, make_user):
    make_user()
    now = utcnow()
    mailing = _schedule(engine, now, minutes=2, channels={"in_app": False, "email": True})
    notice = _schedule(engine, now, minutes=3, title="Second")
    held = HeldEmailTransport()
    engine.email.transport = held

    async def scenario():
        fired = await asyncio.wait_for(run_due_broadcasts(engine, now=now + timedelta(minutes=10)), timeout=5)
        # The tick is over while the mailing is still waiting on its transport
        assert db.get(Notification, notice).status == BroadcastStatus.COMPLETED
        assert held.sent == []
        held.release.set()
        await engine.jobs.drain()
        return fired

    fired = asyncio.run(scenario())
    assert fired == {mailing: BroadcastStatus.SENDING, notice: BroadcastStatus.COMPLETED}
    db.expire_all()
    assert db.get(Notification, mailing).status == BroadcastStatus.COMPLETED
    assert len(held.sent) == 1
