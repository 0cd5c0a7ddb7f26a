import pytest

from beacon.models.notification import Notification, BroadcastRecipient, TargetMode
from beacon.services.audience import AudienceResolver
from beacon.services.errors import BroadcastValidationError, EmptyAudienceError


def test_all_resolves_only_active_users(db, make_user):
    a = make_user()
    b = make_user()
    make_user(is_active=False)
    recipients = AudienceResolver(db).resolve("ALL")
    assert [r.id for r in recipients] == [a.id, b.id]


def test_selected_deduplicates_and_drops_inactive(db, make_user):
    a = make_user()
    blocked = make_user(is_active=False)
    recipients = AudienceResolver(db).resolve("SELECTED", [a.id, a.id, blocked.id])
    assert [r.id for r in recipients] == [a.id]


@pytest.mark.parametrize("ids", [[], [1, 2]])
def test_single_needs_exactly_one_id(db, make_user, ids):
    make_user()
    with pytest.raises(BroadcastValidationError):
        AudienceResolver(db).resolve("SINGLE", ids)


def test_selected_needs_ids(db):
    with pytest.raises(BroadcastValidationError):
        AudienceResolver(db).resolve("SELECTED", [])


def test_missing_single_user_is_empty_audience(db):
    with pytest.raises(EmptyAudienceError) as exc:
        AudienceResolver(db).resolve("SINGLE", [999])
    assert exc.value.status_code == 404


def test_email_eligibility_flags(db, make_user):
    ok = make_user()
    unverified = make_user(email_verified=False)
    unsubscribed = make_user(email_subscribed=False)
    by_id = {r.id: r for r in AudienceResolver(db).resolve("ALL")}
    assert by_id[ok.id].email_eligible
    assert not by_id[unverified.id].email_eligible
    assert not by_id[unsubscribed.id].email_eligible


def test_resolve_for_selected_uses_snapshot(db, make_user):
    a = make_user()
    b = make_user()
    make_user()
    n = Notification(title="t", target=TargetMode.SELECTED_USERS)
    db.add(n)
    db.flush()
    db.add_all([BroadcastRecipient(notification_id=n.id, user_id=a.id), BroadcastRecipient(notification_id=n.id, user_id=b.id)])
    db.commit()
    db.get(type(b), b.id).is_active = False
    db.commit()

    recipients = AudienceResolver(db).resolve_for(n)
    assert [r.id for r in recipients] == [a.id]
