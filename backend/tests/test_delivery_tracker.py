from beacon.models.delivery_tracking import DeliveryTracking, DeliveryStatus, Channel
from beacon.models.notification import Notification
from beacon.services.audience import AudienceResolver
from beacon.services.delivery_tracker import DeliveryTracker


def _seeded(db, make_user, **user_flags):
    user = make_user(**user_flags)
    n = Notification(title="t")
    db.add(n)
    db.flush()
    recipients = AudienceResolver(db).resolve("SINGLE", [user.id])
    DeliveryTracker(db).seed(n.id, recipients, Channel.ALL)
    db.commit()
    return n, user


def _status(db, n, user, channel=Channel.IN_APP):
    db.expire_all()
    row = db.query(DeliveryTracking).filter_by(notification_id=n.id, user_id=user.id, channel=channel).one()
    return row


def test_seed_creates_one_queued_row_per_channel(db, make_user):
    n, user = _seeded(db, make_user)
    rows = db.query(DeliveryTracking).filter_by(notification_id=n.id).all()
    assert sorted(r.channel for r in rows) == sorted(Channel.ALL)
    assert {r.status for r in rows} == {DeliveryStatus.QUEUED}
    email_row = next(r for r in rows if r.channel == Channel.EMAIL)
    assert email_row.email_address == user.email


def test_seed_skips_email_for_unsubscribed_or_unverified(db, make_user):
    n, _ = _seeded(db, make_user, email_subscribed=False)
    n2, _ = _seeded(db, make_user, email_verified=False)
    for notification in (n, n2):
        channels = {r.channel for r in db.query(DeliveryTracking).filter_by(notification_id=notification.id)}
        assert channels == {Channel.IN_APP, Channel.PUSH}


def test_status_never_regresses(db, make_user):
    n, user = _seeded(db, make_user)
    tracker = DeliveryTracker(db)
    assert tracker.mark_sent(n.id, Channel.IN_APP, [user.id]) == 1
    # sent cannot become failed or sent again
    assert tracker.mark_failed(n.id, Channel.IN_APP, [user.id], error="late") == 0
    assert tracker.mark_sent(n.id, Channel.IN_APP, [user.id]) == 0
    assert tracker.mark_opened(n.id, [user.id]) == 1
    assert tracker.mark_opened(n.id, [user.id]) == 0
    assert tracker.mark_clicked(n.id, [user.id]) == 1
    assert tracker.mark_opened(n.id, [user.id]) == 0
    db.commit()
    row = _status(db, n, user)
    assert row.status == DeliveryStatus.CLICKED
    assert row.sent_at and row.opened_at and row.clicked_at
    assert row.failed_at is None


def test_clicked_straight_from_sent(db, make_user):
    n, user = _seeded(db, make_user)
    tracker = DeliveryTracker(db)
    tracker.mark_sent(n.id, Channel.IN_APP, [user.id])
    assert tracker.mark_clicked(n.id, [user.id]) == 1
    db.commit()
    assert _status(db, n, user).status == DeliveryStatus.CLICKED


def test_failed_is_terminal_and_error_truncated(db, make_user):
    n, user = _seeded(db, make_user)
    tracker = DeliveryTracker(db)
    assert tracker.mark_failed(n.id, Channel.EMAIL, [user.id], error="x" * 500) == 1
    assert tracker.mark_sent(n.id, Channel.EMAIL, [user.id]) == 0
    assert tracker.mark_opened(n.id, [user.id], channel=Channel.EMAIL) == 0
    db.commit()
    row = _status(db, n, user, Channel.EMAIL)
    assert row.status == DeliveryStatus.FAILED
    assert len(row.error_message) == 200


def test_opened_requires_sent(db, make_user):
    n, user = _seeded(db, make_user)
    assert DeliveryTracker(db).mark_opened(n.id, [user.id]) == 0
    db.commit()
    assert _status(db, n, user).status == DeliveryStatus.QUEUED
