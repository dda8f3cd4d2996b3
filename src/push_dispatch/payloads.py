"""Platform payload builders.

One payload variant per platform behind ``build_payload``, so the
dispatcher never branches on platform. ``build_local_payload`` renders the
same intent for on-device scheduling (expiry reminders).
"""

import base64
import hashlib
from dataclasses import dataclass, field
from typing import Optional, Union

from src.push_dispatch.config import (
    CATEGORY_CONFIGS,
    DEFAULT_DISPATCH_CONFIG,
    DispatchConfig,
    INTERRUPTION_LEVELS,
    InterruptionLevel,
    NotificationPriority,
    Platform,
)
from src.push_dispatch.models import NotificationIntent


def _interruption_level(priority: NotificationPriority) -> InterruptionLevel:
    return INTERRUPTION_LEVELS.get(priority, InterruptionLevel.ACTIVE)


def web_push_topic(collapse_id: str) -> str:
    """RFC 8030 Topic: at most 32 characters of the URL-safe base64 alphabet."""
    digest = hashlib.sha256(collapse_id.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")[:32]


def _data_fields(intent: NotificationIntent) -> dict[str, str]:
    """Flat string map shared by every platform (FCM data must be strings)."""
    return {
        **intent.data,
        "notification_id": intent.intent_id,
        "category": intent.category.value,
        "priority": intent.priority.value,
        "entity_ref": intent.entity_ref,
        "deep_link": intent.deep_link,
        "count": str(intent.total_count),
    }


@dataclass
class ApnsPayload:
    """Apple Push Notification service request body and headers."""

    platform: Platform = field(default=Platform.IOS, init=False)
    title: str = ""
    body: str = ""
    category: str = ""
    thread_id: str = ""
    interruption_level: InterruptionLevel = InterruptionLevel.ACTIVE
    collapse_id: str = ""
    topic: str = ""
    data: dict = field(default_factory=dict)

    @property
    def headers(self) -> dict[str, str]:
        passive = self.interruption_level == InterruptionLevel.PASSIVE
        return {
            "apns-push-type": "alert",
            "apns-priority": "5" if passive else "10",
            "apns-collapse-id": self.collapse_id[:64],
            "apns-topic": self.topic,
        }

    def to_dict(self) -> dict:
        return {
            "headers": self.headers,
            "payload": {
                "aps": {
                    "alert": {"title": self.title, "body": self.body},
                    "sound": None if self.interruption_level == InterruptionLevel.PASSIVE else "default",
                    "category": self.category,
                    "thread-id": self.thread_id,
                    "interruption-level": self.interruption_level.value,
                },
                **self.data,
            },
        }


@dataclass
class FcmPayload:
    """Firebase Cloud Messaging v1 message for Android."""

    platform: Platform = field(default=Platform.ANDROID, init=False)
    title: str = ""
    body: str = ""
    channel_id: str = ""
    android_priority: str = "normal"
    collapse_key: str = ""
    click_action: str = ""
    ttl_seconds: int = 3600
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "notification": {"title": self.title, "body": self.body},
            "data": dict(self.data),
            "android": {
                "priority": self.android_priority,
                "collapse_key": self.collapse_key,
                "ttl": f"{self.ttl_seconds}s",
                "notification": {
                    "channel_id": self.channel_id,
                    "click_action": self.click_action,
                    "tag": self.collapse_key,
                },
            },
        }


@dataclass
class WebPushPayload:
    """Web Push message for browsers."""

    platform: Platform = field(default=Platform.WEB, init=False)
    title: str = ""
    body: str = ""
    urgency: str = "normal"
    topic: str = ""
    tag: str = ""
    link: str = ""
    ttl_seconds: int = 3600
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "headers": {"Urgency": self.urgency, "TTL": str(self.ttl_seconds), "Topic": self.topic},
            "notification": {"title": self.title, "body": self.body, "tag": self.tag},
            "fcm_options": {"link": self.link},
            "data": dict(self.data),
        }


PlatformPayload = Union[ApnsPayload, FcmPayload, WebPushPayload]

_WEB_URGENCY = {
    InterruptionLevel.TIME_SENSITIVE: "high",
    InterruptionLevel.ACTIVE: "normal",
    InterruptionLevel.PASSIVE: "low",
}


def build_payload(
    intent: NotificationIntent,
    platform: Platform,
    config: Optional[DispatchConfig] = None,
) -> PlatformPayload:
    """Build the platform-specific payload for an intent."""
    config = config or DEFAULT_DISPATCH_CONFIG
    category_config = CATEGORY_CONFIGS.get(intent.category, {})
    level = _interruption_level(intent.priority)
    data = _data_fields(intent)
    ttl = category_config.get("ttl_seconds", 3600)

    if platform == Platform.IOS:
        return ApnsPayload(
            title=intent.title,
            body=intent.body,
            category=intent.category.value,
            thread_id=intent.grouping_key,
            interruption_level=level,
            collapse_id=intent.collapse_id,
            topic=config.apns_topic,
            data=data,
        )

    if platform == Platform.ANDROID:
        return FcmPayload(
            title=intent.title,
            body=intent.body,
            channel_id=category_config.get("channel_id", intent.category.value),
            android_priority="high" if level == InterruptionLevel.TIME_SENSITIVE else "normal",
            collapse_key=intent.collapse_id,
            click_action=intent.category.value,
            ttl_seconds=ttl,
            data=data,
        )

    if platform == Platform.WEB:
        return WebPushPayload(
            title=intent.title,
            body=intent.body,
            urgency=_WEB_URGENCY[level],
            topic=web_push_topic(intent.collapse_id),
            tag=intent.collapse_id,
            link=intent.deep_link,
            ttl_seconds=ttl,
            data=data,
        )

    raise ValueError(f"Unsupported platform: {platform}")


def build_local_payload(intent: NotificationIntent) -> dict:
    """Request shape consumed by the app's local notification scheduler."""
    return {
        "identifier": intent.collapse_id,
        "title": intent.title,
        "body": intent.body,
        "category_identifier": intent.category.value,
        "thread_identifier": intent.grouping_key,
        "interruption_level": _interruption_level(intent.priority).value,
        "user_info": _data_fields(intent),
    }
