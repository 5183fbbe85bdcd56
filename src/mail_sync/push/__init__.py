"""Provider push (watch) registration and notification decoding."""

from .manager import PushNotification, PushSubscriptionManager, decode_push_notification

__all__ = ["PushNotification", "PushSubscriptionManager", "decode_push_notification"]
