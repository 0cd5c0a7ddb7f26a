import asyncio
from datetime import timedelta

from beacon.core.clock import utcnow
from beacon.core.security import create_unsubscribe_token
from beacon.models.delivery_tracking import DeliveryTracking, Channel, DeliveryStatus
from beacon.models.notification import Notification
from beacon.models.user import User

from conftest import payload, submit_and_drain


def _broadcast(engine, **fields):
    return asyncio.run(submit_and_drain(engine, payload(**fields)))["notification_id"]


def _in_app_row(db, nid, user_id):
    db.expire_all()
    return db.query(DeliveryTracking).filter_by(notification_id=nid, user_id=user_id, channel=Channel.IN_APP).one()


def test_feed_lists_newest_first_with_unread_count(client, engine, make_user, login):
    user = make_user()
    _broadcast(engine, title="First", type="SECURITY", priority="HIGH")
    _broadcast(engine, title="Second")
    headers = login(user.email)

    page = client.get("/notifications", headers=headers).json()
    assert [i["title"] for i in page["items"]] == ["Second", "First"]
    assert page["total"] == 2
    assert page["unread_count"] == 2

    only_security = client.get("/notifications", params={"type": "SECURITY"}, headers=headers).json()
    assert [i["title"] for i in only_security["items"]] == ["First"]
    assert only_security["items"][0]["priority"] == "HIGH"

    paged = client.get("/notifications", params={"limit": 1, "page": 2}, headers=headers).json()
    assert [i["title"] for i in paged["items"]] == ["First"]
    assert paged["pages"] == 2

    assert client.get("/notifications", params={"mode": "unreadCount"}, headers=headers).json() == {"unread_count": 2}


def test_read_is_idempotent(client, engine, make_user, login, db):
    user = make_user()
    nid = _broadcast(engine)
    headers = login(user.email)
    item = client.get("/notifications", headers=headers).json()["items"][0]

    first = client.patch(f"/notifications/{item['id']}/read", headers=headers)
    assert first.status_code == 200
    assert first.json()["is_read"] is True
    opened_at = _in_app_row(db, nid, user.id).opened_at
    assert opened_at is not None

    second = client.patch(f"/notifications/{item['id']}/read", headers=headers)
    assert second.json()["read_at"] == first.json()["read_at"]
    assert _in_app_row(db, nid, user.id).opened_at == opened_at
    assert client.get("/notifications", params={"mode": "unreadCount"}, headers=headers).json()["unread_count"] == 0


def test_cannot_read_someone_elses_entry(client, engine, make_user, login):
    owner = make_user()
    other = make_user()
    _broadcast(engine, target="SINGLE", user_ids=[owner.id])
    item = client.get("/notifications", headers=login(owner.email)).json()["items"][0]
    assert client.patch(f"/notifications/{item['id']}/read", headers=login(other.email)).status_code == 404


def test_read_all(client, engine, make_user, login, db):
    user = make_user()
    first = _broadcast(engine)
    _broadcast(engine, title="Another")
    headers = login(user.email)

    r = client.patch("/notifications/read-all", headers=headers)
    assert r.json() == {"updated": 2, "unread_count": 0}
    assert _in_app_row(db, first, user.id).status == DeliveryStatus.OPENED
    assert client.patch("/notifications/read-all", headers=headers).json()["updated"] == 0


def test_expired_entries_hidden(client, engine, make_user, login):
    user = make_user()
    old = asyncio.run(submit_and_drain(engine, payload(title="Old", expiry_days=1), now=utcnow() - timedelta(days=2)))
    assert old["in_app_created"] == 1
    _broadcast(engine, title="Current")
    headers = login(user.email)

    page = client.get("/notifications", headers=headers).json()
    assert [i["title"] for i in page["items"]] == ["Current"]
    assert page["unread_count"] == 1


def test_click_redirects_and_tracks(client, engine, make_user, login, db):
    user = make_user()
    nid = _broadcast(engine, cta={"label": "Details", "url": "/status/42"})
    headers = login(user.email)

    r = client.get(f"/notifications/{nid}/click", headers=headers, follow_redirects=False)
    assert r.status_code == 307
    assert r.headers["location"].endswith("/status/42")
    assert r.headers["location"].startswith("http")
    row = _in_app_row(db, nid, user.id)
    assert row.status == DeliveryStatus.CLICKED
    assert row.clicked_at is not None


def test_click_absolute_url_kept(client, engine, make_user, login):
    user = make_user()
    nid = _broadcast(engine, cta={"url": "https://status.example.com/incident"})
    r = client.get(f"/notifications/{nid}/click", headers=login(user.email), follow_redirects=False)
    assert r.headers["location"] == "https://status.example.com/incident"


def test_click_on_push_only_broadcast(client, engine, make_user, login, db):
    user = make_user(tokens=["device"])
    nid = _broadcast(engine, target="SINGLE", user_ids=[user.id], channels={"in_app": False, "push": True}, cta={"url": "/x"})
    r = client.get(f"/notifications/{nid}/click", headers=login(user.email), follow_redirects=False)
    assert r.status_code == 307
    db.expire_all()
    row = db.query(DeliveryTracking).filter_by(notification_id=nid, user_id=user.id, channel=Channel.PUSH).one()
    assert row.status == DeliveryStatus.CLICKED


def test_click_guards(client, engine, make_user, login):
    owner = make_user()
    stranger = make_user()
    with_cta = _broadcast(engine, target="SINGLE", user_ids=[owner.id], cta={"url": "/x"})
    without_cta = _broadcast(engine, title="Plain", target="SINGLE", user_ids=[owner.id])

    assert client.get(f"/notifications/{with_cta}/click", headers=login(stranger.email), follow_redirects=False).status_code == 403
    assert client.get(f"/notifications/{without_cta}/click", headers=login(owner.email), follow_redirects=False).status_code == 404
    assert client.get("/notifications/9999/click", headers=login(owner.email), follow_redirects=False).status_code == 404


def test_email_subscription_toggle(client, make_user, login, db):
    user = make_user()
    headers = login(user.email)
    assert client.get("/notifications/email-subscription", headers=headers).json() == {"email_subscribed": True}
    r = client.put("/notifications/email-subscription", json={"email_subscribed": False}, headers=headers)
    assert r.json() == {"email_subscribed": False}
    assert db.get(User, user.id).email_subscribed is False


def test_unsubscribe_link(client, make_user, db):
    user = make_user()
    r = client.get(f"/notifications/unsubscribe/{create_unsubscribe_token(user.id)}")
    assert r.status_code == 200
    assert r.json() == {"status": "unsubscribed", "email": user.email}
    assert db.get(User, user.id).email_subscribed is False

    assert client.get("/notifications/unsubscribe/not-a-token").status_code == 400


def test_feed_requires_login(client):
    assert client.get("/notifications").status_code == 401


def test_inactive_broadcasts_not_in_feed(client, engine, make_user, login, db):
    user = make_user()
    at = (utcnow() + timedelta(minutes=10)).isoformat()
    asyncio.run(engine.submit(payload(send_mode="LATER", scheduled_at=at), None))
    assert db.query(Notification).count() == 1
    assert client.get("/notifications", headers=login(user.email)).json()["items"] == []
