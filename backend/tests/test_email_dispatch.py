import asyncio

from beacon.models.delivery_tracking import DeliveryTracking, Channel, DeliveryStatus
from beacon.models.notification import Notification, BroadcastStatus
from beacon.models.user import User

from conftest import payload, submit_and_drain

EMAIL_ONLY = {"in_app": False, "email": True}


def _email_rows(db, nid):
    db.expire_all()
    return {r.user_id: r for r in db.query(DeliveryTracking).filter_by(notification_id=nid, channel=Channel.EMAIL)}


def test_submit_reports_sending_then_completes(db, engine, make_user, email_transport):
    users = [make_user() for _ in range(3)]

    async def scenario():
        result = await engine.submit(payload(channels={"in_app": True, "email": True}), None)
        assert engine.jobs.pending == 1
        await engine.jobs.drain()
        return result

    result = asyncio.run(scenario())
    assert result["status"] == BroadcastStatus.SENDING
    assert result["email_queued"] == 3
    assert result["in_app_created"] == 3

    n = db.get(Notification, result["notification_id"])
    assert n.status == BroadcastStatus.COMPLETED
    assert (n.email_sent, n.email_failed) == (3, 0)
    assert sorted(m["to"] for m in email_transport.sent) == sorted(u.email for u in users)
    assert all(r.status == DeliveryStatus.SENT for r in _email_rows(db, n.id).values())


def test_some_failures_make_partial(db, engine, make_user, email_transport):
    make_user()
    make_user()
    bad = make_user()
    email_transport.fail_for.add(bad.email)

    result = asyncio.run(submit_and_drain(engine, payload(channels=EMAIL_ONLY)))
    n = db.get(Notification, result["notification_id"])
    assert n.status == BroadcastStatus.PARTIAL
    assert (n.email_sent, n.email_failed) == (2, 1)
    row = _email_rows(db, n.id)[bad.id]
    assert row.status == DeliveryStatus.FAILED
    assert "mailbox unavailable" in row.error_message


def test_all_failures_make_failed(db, engine, make_user, email_transport):
    for _ in range(2):
        email_transport.fail_for.add(make_user().email)
    result = asyncio.run(submit_and_drain(engine, payload(channels=EMAIL_ONLY)))
    n = db.get(Notification, result["notification_id"])
    assert n.status == BroadcastStatus.FAILED
    assert (n.email_sent, n.email_failed) == (0, 2)


def test_counts_cover_exactly_the_eligible_users(db, engine, make_user, email_transport):
    for _ in range(3):
        make_user()
    make_user(email_verified=False)
    make_user(email_subscribed=False)

    result = asyncio.run(submit_and_drain(engine, payload(channels={"in_app": True, "email": True})))
    assert result["email_queued"] == 3
    n = db.get(Notification, result["notification_id"])
    assert n.email_sent + n.email_failed == 3
    assert n.in_app_created == 5


def test_no_eligible_email_recipients_completes_at_once(db, engine, make_user, email_transport):
    make_user(email_subscribed=False)
    result = asyncio.run(submit_and_drain(engine, payload(channels={"in_app": True, "email": True})))
    assert result["email_queued"] == 0
    assert result["status"] == BroadcastStatus.COMPLETED
    assert email_transport.sent == []


def test_unsubscribe_after_submit_is_respected(db, engine, make_user, email_transport):
    stays = make_user()
    leaves = make_user()

    async def scenario():
        result = await engine.submit(payload(channels=EMAIL_ONLY), None)
        # Opt-out lands before the background job reads its targets
        db.get(User, leaves.id).email_subscribed = False
        db.commit()
        await engine.jobs.drain()
        return result

    result = asyncio.run(scenario())
    assert [m["to"] for m in email_transport.sent] == [stays.email]
    row = _email_rows(db, result["notification_id"])[leaves.id]
    assert row.status == DeliveryStatus.FAILED
    assert row.error_message == "recipient no longer eligible for email"


def test_everyone_opting_out_after_submit_completes_with_nothing_sent(db, engine, make_user, email_transport):
    users = [make_user() for _ in range(2)]

    async def scenario():
        result = await engine.submit(payload(channels=EMAIL_ONLY), None)
        for u in users:
            db.get(User, u.id).email_subscribed = False
        db.commit()
        await engine.jobs.drain()
        return result

    result = asyncio.run(scenario())
    assert result["email_queued"] == 2
    assert email_transport.sent == []
    n = db.get(Notification, result["notification_id"])
    # Nothing was attempted, so nothing failed to send
    assert n.status == BroadcastStatus.COMPLETED
    assert (n.email_sent, n.email_failed) == (0, 0)
    rows = _email_rows(db, n.id)
    assert {r.status for r in rows.values()} == {DeliveryStatus.FAILED}
    assert {r.error_message for r in rows.values()} == {"recipient no longer eligible for email"}


def test_email_carries_unsubscribe_link_and_template(db, engine, make_user, email_transport):
    u = make_user()
    submission = payload(
        mode="email",
        subject="Your invoice",
        html_template="<p>Hi {{ name }}</p><a href=\"{{ unsubscribe_url }}\">unsubscribe</a>",
        channels=EMAIL_ONLY,
    )
    asyncio.run(submit_and_drain(engine, submission))
    [sent] = email_transport.sent
    assert sent["subject"] == "Your invoice"
    assert f"Hi {u.full_name}" in sent["html"]
    assert "/notifications/unsubscribe/" in sent["unsubscribe_url"]
    assert sent["unsubscribe_url"] in sent["html"]


def test_plain_message_is_escaped(db, engine, make_user, email_transport):
    make_user()
    asyncio.run(submit_and_drain(engine, payload(message="<script>x</script>", channels=EMAIL_ONLY)))
    [sent] = email_transport.sent
    assert "<script>" not in sent["html"]
    assert "&lt;script&gt;" in sent["html"]


def test_crashed_email_job_fails_broadcast(db, engine, make_user, monkeypatch):
    make_user()
    make_user()

    async def boom(content, recipients):
        raise RuntimeError("smtp pool exploded")

    monkeypatch.setattr(engine.email, "dispatch", boom)
    result = asyncio.run(submit_and_drain(engine, payload(channels={"in_app": True, "email": True})))
    assert result["status"] == BroadcastStatus.SENDING

    n = db.get(Notification, result["notification_id"])
    assert n.status == BroadcastStatus.FAILED
    assert n.completed_at is not None
    rows = _email_rows(db, n.id).values()
    assert {r.status for r in rows} == {DeliveryStatus.FAILED}
    # In-app delivery that already happened stays sent
    in_app = db.query(DeliveryTracking).filter_by(notification_id=n.id, channel=Channel.IN_APP).all()
    assert {r.status for r in in_app} == {DeliveryStatus.SENT}
