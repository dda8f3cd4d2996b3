"""Data models for Push Notification Dispatch."""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.push_dispatch.config import (
    AttemptState,
    CATEGORY_CONFIGS,
    DeliveryOutcome,
    NotificationCategory,
    NotificationPriority,
    Platform,
    TERMINAL_ATTEMPT_STATES,
)

EARTH_RADIUS_KM = 6371.0


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_hhmm(value: str) -> int:
    """Parse HH:MM into minutes after midnight."""
    hour, minute = map(int, value.split(":"))
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid time of day: {value}")
    return hour * 60 + minute


@dataclass(frozen=True)
class GeoPoint:
    """WGS84 coordinate."""

    latitude: float
    longitude: float

    def distance_km(self, other: "GeoPoint") -> float:
        """Great-circle distance (haversine)."""
        lat1, lon1 = math.radians(self.latitude), math.radians(self.longitude)
        lat2, lon2 = math.radians(other.latitude), math.radians(other.longitude)
        dlat = lat2 - lat1
        dlon = lon2 - lon1
        a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
        return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


@dataclass(frozen=True)
class DomainEvent:
    """An upstream occurrence that may warrant a notification."""

    category: NotificationCategory
    entity_id: str
    location: Optional[GeoPoint] = None
    recipient_ids: tuple[str, ...] = ()
    actor_id: Optional[str] = None
    title: str = ""
    body: str = ""
    data: dict = field(default_factory=dict)
    event_id: str = field(default_factory=_new_id)
    occurred_at: datetime = field(default_factory=_now)

    @property
    def route(self) -> str:
        return CATEGORY_CONFIGS.get(self.category, {}).get("route", self.category.value)

    @property
    def entity_ref(self) -> str:
        """Stable reference to the underlying entity, e.g. ``listing/42``."""
        return f"{self.route}/{self.entity_id}"

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "category": self.category.value,
            "entity_id": self.entity_id,
            "location": (
                {"latitude": self.location.latitude, "longitude": self.location.longitude}
                if self.location else None
            ),
            "recipient_ids": list(self.recipient_ids),
            "actor_id": self.actor_id,
            "title": self.title,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class NotificationPreferences:
    """A user's notification settings."""

    user_id: str
    categories: dict[NotificationCategory, bool] = field(default_factory=dict)
    push_enabled: bool = True
    quiet_hours_start: Optional[str] = None  # HH:MM, local
    quiet_hours_end: Optional[str] = None
    timezone: str = "UTC"
    geofence_radius_km: float = 5.0

    @classmethod
    def defaults(cls, user_id: str) -> "NotificationPreferences":
        """All categories enabled, no quiet hours."""
        return cls(user_id=user_id)

    def is_category_enabled(self, category: NotificationCategory) -> bool:
        if not self.push_enabled:
            return False
        return self.categories.get(category, True)

    @property
    def has_quiet_hours(self) -> bool:
        return bool(self.quiet_hours_start and self.quiet_hours_end)

    def local_time(self, current_time: datetime) -> datetime:
        """Convert to the user's timezone. Naive datetimes are taken as UTC."""
        if current_time.tzinfo is None:
            current_time = current_time.replace(tzinfo=timezone.utc)
        try:
            tz = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            tz = timezone.utc
        return current_time.astimezone(tz)

    def is_in_quiet_hours(self, current_time: datetime) -> bool:
        """Check if current time is within quiet hours, in the user's local time."""
        if not self.has_quiet_hours:
            return False

        try:
            start_minutes = _parse_hhmm(self.quiet_hours_start)
            end_minutes = _parse_hhmm(self.quiet_hours_end)
        except (ValueError, AttributeError):
            return False

        local = self.local_time(current_time)
        current_minutes = local.hour * 60 + local.minute

        if start_minutes > end_minutes:
            # Overnight quiet hours (e.g., 22:00 - 06:00)
            return current_minutes >= start_minutes or current_minutes <= end_minutes
        return start_minutes <= current_minutes <= end_minutes

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "categories": {c.value: enabled for c, enabled in self.categories.items()},
            "push_enabled": self.push_enabled,
            "quiet_hours_start": self.quiet_hours_start,
            "quiet_hours_end": self.quiet_hours_end,
            "timezone": self.timezone,
            "geofence_radius_km": self.geofence_radius_km,
        }


@dataclass
class DeviceToken:
    """Platform-tagged push token bound to one user."""

    token: str
    user_id: str
    platform: Platform
    registered_at: datetime = field(default_factory=_now)
    last_confirmed_at: Optional[datetime] = None

    def mark_confirmed(self) -> None:
        """Record that the gateway accepted this token."""
        self.last_confirmed_at = _now()

    @property
    def last_seen_at(self) -> datetime:
        return self.last_confirmed_at or self.registered_at

    def to_dict(self) -> dict:
        return {
            "token": f"{self.token[:8]}...",
            "user_id": self.user_id,
            "platform": self.platform.value,
            "registered_at": self.registered_at.isoformat(),
            "last_confirmed_at": self.last_confirmed_at.isoformat() if self.last_confirmed_at else None,
        }


@dataclass
class RecipientCandidate:
    """A user considered for one event."""

    user_id: str
    preferences: NotificationPreferences
    tokens: list[DeviceToken] = field(default_factory=list)

    @property
    def has_devices(self) -> bool:
        return bool(self.tokens)


@dataclass
class NotificationIntent:
    """A decided, ready-to-deliver notification for one recipient."""

    recipient_id: str
    category: NotificationCategory
    priority: NotificationPriority
    title: str
    body: str
    entity_ref: str
    deep_link: str
    intent_id: str = field(default_factory=_new_id)
    collapse_id: str = ""
    entity_ids: list[str] = field(default_factory=list)
    total_count: int = 1
    source_event_id: Optional[str] = None
    data: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)

    def __post_init__(self):
        if not self.collapse_id:
            self.collapse_id = f"{self.category.value}:{self.entity_ref}"

    @property
    def grouping_key(self) -> str:
        return f"{self.recipient_id}:{self.category.value}"

    @property
    def is_collapsed(self) -> bool:
        return self.total_count > 1

    def to_dict(self) -> dict:
        return {
            "intent_id": self.intent_id,
            "recipient_id": self.recipient_id,
            "category": self.category.value,
            "priority": self.priority.value,
            "title": self.title,
            "body": self.body,
            "entity_ref": self.entity_ref,
            "deep_link": self.deep_link,
            "collapse_id": self.collapse_id,
            "grouping_key": self.grouping_key,
            "entity_ids": list(self.entity_ids),
            "total_count": self.total_count,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeliveryResult:
    """Classified result of one gateway call."""

    outcome: DeliveryOutcome
    status_code: Optional[int] = None
    message_id: Optional[str] = None
    error: str = ""
    latency_ms: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.outcome == DeliveryOutcome.SUCCESS

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "message_id": self.message_id,
            "error": self.error,
            "latency_ms": self.latency_ms,
        }


@dataclass
class DeliveryAttempt:
    """A pending (intent, token) delivery owned by the retry scheduler."""

    intent: NotificationIntent
    token: DeviceToken
    attempt_id: str = field(default_factory=_new_id)
    attempt_count: int = 1
    state: AttemptState = AttemptState.PENDING
    next_retry_at: Optional[datetime] = None
    last_error: str = ""
    created_at: datetime = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ATTEMPT_STATES

    def to_dict(self) -> dict:
        return {
            "attempt_id": self.attempt_id,
            "intent_id": self.intent.intent_id,
            "entity_ref": self.intent.entity_ref,
            "platform": self.token.platform.value,
            "attempt_count": self.attempt_count,
            "state": self.state.value,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_error": self.last_error,
        }


@dataclass
class DispatchReport:
    """Per-token outcomes for one dispatched intent."""

    intent_id: str
    results: dict[str, DeliveryResult] = field(default_factory=dict)
    pruned: int = 0
    retrying: int = 0

    @property
    def delivered(self) -> bool:
        return any(r.success for r in self.results.values())

    @property
    def attempted(self) -> int:
        return len(self.results)


@dataclass
class ProcessingResult:
    """Outcome of handle_event for one DomainEvent."""

    dispatched: int = 0
    excluded: int = 0
    errors: int = 0
    held: int = 0
    exclusions: dict[str, int] = field(default_factory=dict)

    def record_exclusion(self, reason: str) -> None:
        self.excluded += 1
        self.exclusions[reason] = self.exclusions.get(reason, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispatched": self.dispatched,
            "excluded": self.excluded,
            "errors": self.errors,
            "held": self.held,
            "exclusions": dict(self.exclusions),
        }


@dataclass
class DispatchStats:
    """Pipeline counters, observable through logs and get_stats()."""

    events: int = 0
    dispatched: int = 0
    delivered: int = 0
    pruned: int = 0
    retried: int = 0
    dropped: int = 0
    rejected: int = 0
    grouped: int = 0
    errors: int = 0
    excluded_by_reason: dict[str, int] = field(default_factory=dict)
    excluded_by_category: dict[str, int] = field(default_factory=dict)
    dropped_by_category: dict[str, int] = field(default_factory=dict)

    def record_excluded(self, category: NotificationCategory, reason: str) -> None:
        self.excluded_by_reason[reason] = self.excluded_by_reason.get(reason, 0) + 1
        key = category.value
        self.excluded_by_category[key] = self.excluded_by_category.get(key, 0) + 1

    def record_dropped(self, category: NotificationCategory) -> None:
        self.dropped += 1
        key = category.value
        self.dropped_by_category[key] = self.dropped_by_category.get(key, 0) + 1

    @property
    def total_excluded(self) -> int:
        return sum(self.excluded_by_reason.values())

    def to_dict(self) -> dict:
        return {
            "events": self.events,
            "dispatched": self.dispatched,
            "delivered": self.delivered,
            "excluded": self.total_excluded,
            "pruned": self.pruned,
            "retried": self.retried,
            "dropped": self.dropped,
            "rejected": self.rejected,
            "grouped": self.grouped,
            "errors": self.errors,
            "excluded_by_reason": dict(self.excluded_by_reason),
            "excluded_by_category": dict(self.excluded_by_category),
            "dropped_by_category": dict(self.dropped_by_category),
        }
