from beacon.models.base import Base
from beacon.models.user import User
from beacon.models.push_token import PushToken
from beacon.models.notification import Notification, BroadcastRecipient
from beacon.models.delivery_tracking import DeliveryTracking
from beacon.models.user_notification import UserNotification
from beacon.models.email_template import EmailTemplate

__all__ = [
    "Base",
    "User",
    "PushToken",
    "Notification",
    "BroadcastRecipient",
    "DeliveryTracking",
    "UserNotification",
    "EmailTemplate",
]
