from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from beacon.models.delivery_tracking import Channel, DeliveryStatus, DeliveryTracking
from beacon.models.notification import Notification
from beacon.models.user_notification import UserNotification
from beacon.services import broadcast_store


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _empty_status_counts() -> dict[str, int]:
    return {s: 0 for s in DeliveryStatus.ALL}


def _rollup(counts: dict[str, int]) -> dict[str, Any]:
    """Totals and rates for one bag of status counts."""
    tracked = sum(counts.values())
    delivered = sum(counts.get(s, 0) for s in DeliveryStatus.DELIVERED)
    engaged = counts.get(DeliveryStatus.OPENED, 0) + counts.get(DeliveryStatus.CLICKED, 0)
    return {
        "tracked": tracked,
        "delivered": delivered,
        "failed": counts.get(DeliveryStatus.FAILED, 0),
        "pending": counts.get(DeliveryStatus.QUEUED, 0),
        "delivery_rate": _rate(delivered, tracked),
        "engagement_rate": _rate(engaged, delivered),
        "click_rate": _rate(counts.get(DeliveryStatus.CLICKED, 0), delivered),
    }


class AnalyticsAggregator:
    def __init__(self, db: Session):
        self.db = db

    def stats_for(self, notification_id: int) -> dict[str, Any]:
        n = broadcast_store.get(self.db, notification_id)

        rows = self.db.execute(
            select(DeliveryTracking.channel, DeliveryTracking.status, func.count())
            .where(DeliveryTracking.notification_id == notification_id)
            .group_by(DeliveryTracking.channel, DeliveryTracking.status)
        ).all()
        delivery_stats = [{"channel": c, "status": s, "count": cnt} for c, s, cnt in rows]
        by_channel: dict[str, dict[str, int]] = {}
        overall = _empty_status_counts()
        for c, s, cnt in rows:
            by_channel.setdefault(c, _empty_status_counts())[s] = cnt
            overall[s] = overall.get(s, 0) + cnt

        read_rows = dict(self.db.execute(
            select(UserNotification.is_read, func.count())
            .where(UserNotification.notification_id == notification_id)
            .group_by(UserNotification.is_read)
        ).all())
        read = int(read_rows.get(True, 0))
        unread = int(read_rows.get(False, 0))

        total_sent = (n.in_app_created or 0) + (n.push_sent or 0) + (n.email_sent or 0)
        summary = _rollup(overall)
        return {
            "notification": {
                "id": n.id,
                "title": n.title,
                "status": n.status,
                "created_at": n.created_at,
                "completed_at": n.completed_at,
                "total_targets": n.total_targets,
                "in_app_created": n.in_app_created,
                "push_sent": n.push_sent,
                "email_sent": n.email_sent,
                "email_failed": n.email_failed,
            },
            "stats": {
                "total_sent": total_sent,
                "total_targets": n.total_targets,
                "delivery_rate": summary["delivery_rate"],
                "open_rate": _rate(read, n.in_app_created or 0),
                "click_rate": summary["click_rate"],
                "totals": summary,
                "delivery_stats": delivery_stats,
                "by_channel": {c: {**counts, **_rollup(counts)} for c, counts in by_channel.items()},
                "read_stats": {"read": read, "unread": unread, "total": read + unread},
                "hourly_engagement": self.hourly_engagement(notification_id),
            },
        }

    def hourly_engagement(self, notification_id: int) -> list[dict[str, Any]]:
        """Opens and clicks bucketed by hour of the event."""
        buckets: dict[datetime, dict[str, int]] = {}
        q = (
            select(DeliveryTracking.opened_at, DeliveryTracking.clicked_at)
            .where(
                DeliveryTracking.notification_id == notification_id,
                DeliveryTracking.status.in_((DeliveryStatus.OPENED, DeliveryStatus.CLICKED)),
            )
        )
        for opened_at, clicked_at in self.db.execute(q):
            for key, ts in (("opened", opened_at), ("clicked", clicked_at)):
                if ts is None:
                    continue
                hour = ts.replace(minute=0, second=0, microsecond=0)
                bucket = buckets.setdefault(hour, {"opened": 0, "clicked": 0})
                bucket[key] += 1
        return [{"hour": h, **buckets[h]} for h in sorted(buckets)]

    def fleet_stats(self, start: datetime | None = None, end: datetime | None = None, channel: str | None = None) -> dict[str, Any]:
        if channel is not None and channel not in Channel.ALL:
            raise ValueError(f"Unknown channel {channel}")
        q = (
            select(DeliveryTracking.notification_id, DeliveryTracking.channel, DeliveryTracking.status, func.count())
            .group_by(DeliveryTracking.notification_id, DeliveryTracking.channel, DeliveryTracking.status)
        )
        if start is not None:
            q = q.where(DeliveryTracking.queued_at >= start)
        if end is not None:
            q = q.where(DeliveryTracking.queued_at <= end)
        if channel is not None:
            q = q.where(DeliveryTracking.channel == channel)

        per_notification: dict[int, dict[str, Any]] = {}
        overall = _empty_status_counts()
        for nid, c, s, cnt in self.db.execute(q):
            item = per_notification.setdefault(nid, {"notification_id": nid, "total": 0, "by_channel": {}, "by_status": {}})
            item["total"] += cnt
            item["by_channel"][c] = item["by_channel"].get(c, 0) + cnt
            item["by_status"][s] = item["by_status"].get(s, 0) + cnt
            overall[s] = overall.get(s, 0) + cnt

        if per_notification:
            titles = dict(self.db.execute(
                select(Notification.id, Notification.title).where(Notification.id.in_(list(per_notification)))
            ).all())
            for nid, item in per_notification.items():
                item["title"] = titles.get(nid)
                item.update({k: v for k, v in _rollup(item["by_status"]).items() if k.endswith("_rate")})

        return {
            "analytics": [per_notification[k] for k in sorted(per_notification, reverse=True)],
            "totals": {"notifications": len(per_notification), "by_status": overall, **_rollup(overall)},
        }
