"""Configuration for Push Notification Dispatch."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class NotificationCategory(Enum):
    """Domain event / notification categories."""
    NEW_LISTING = "new_listing"
    MESSAGE = "message"
    RESERVATION_ACCEPTED = "reservation_accepted"
    RESERVATION_UPDATED = "reservation_updated"
    EXPIRY_WARNING = "expiry_warning"
    WEEKLY_SUMMARY = "weekly_summary"
    TIPS = "tips"
    REVIEW = "review"
    CHALLENGE = "challenge"
    FORUM = "forum"


class NotificationPriority(Enum):
    """Notification priority levels."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Platform(Enum):
    """Device platforms."""
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class InterruptionLevel(Enum):
    """iOS interruption levels, also used as the urgency hint elsewhere."""
    TIME_SENSITIVE = "time-sensitive"
    ACTIVE = "active"
    PASSIVE = "passive"


class DeliveryOutcome(Enum):
    """Classified push gateway response."""
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    REJECTED = "rejected"


class AttemptState(Enum):
    """Delivery attempt lifecycle."""
    PENDING = "pending"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    DROPPED = "dropped"
    CANCELLED = "cancelled"


TERMINAL_ATTEMPT_STATES = frozenset({
    AttemptState.SUCCESS,
    AttemptState.PERMANENT_FAILURE,
    AttemptState.DROPPED,
    AttemptState.CANCELLED,
})


class ExclusionReason(Enum):
    """Why a recipient was excluded for an event."""
    CATEGORY_DISABLED = "category_disabled"
    NO_DEVICES = "no_devices"
    QUIET_HOURS = "quiet_hours"
    SELF_ACTION = "self_action"


INTERRUPTION_LEVELS: dict[NotificationPriority, InterruptionLevel] = {
    NotificationPriority.HIGH: InterruptionLevel.TIME_SENSITIVE,
    NotificationPriority.MEDIUM: InterruptionLevel.ACTIVE,
    NotificationPriority.LOW: InterruptionLevel.PASSIVE,
}

# Categories resolved through the geofence index instead of explicit recipients
LOCATION_SCOPED_CATEGORIES = frozenset({NotificationCategory.NEW_LISTING})


def _ungrouped_defaults() -> frozenset:
    return frozenset({
        NotificationCategory.MESSAGE,
        NotificationCategory.RESERVATION_ACCEPTED,
        NotificationCategory.RESERVATION_UPDATED,
        NotificationCategory.EXPIRY_WARNING,
    })


@dataclass
class DispatchConfig:
    """Dispatch pipeline configuration."""

    # Eligibility
    default_priority: NotificationPriority = NotificationPriority.MEDIUM

    # Grouping
    group_threshold: int = 3
    group_window_seconds: float = 300.0
    group_display_cap: int = 5
    grouping_sweep_seconds: float = 15.0
    ungrouped_categories: frozenset = field(default_factory=_ungrouped_defaults)

    # Retry: gateway calls per (intent, token), the first dispatch included.
    # Delay n is waited after failed attempt n; the last entry repeats.
    max_attempts: int = 4
    retry_delays_seconds: tuple[float, ...] = (1.0, 5.0, 15.0, 60.0)

    # Timeouts
    geofence_timeout_seconds: float = 3.0
    gateway_timeout_seconds: float = 5.0

    # Geofence
    min_radius_km: float = 1.0
    max_radius_km: float = 100.0
    default_radius_km: float = 5.0
    listing_search_radius_km: float = 100.0

    # Gateway
    gateway_url: str = ""
    gateway_api_key: Optional[str] = None
    apns_topic: str = "club.foodshare.app"

    # Registry hygiene
    stale_token_days: int = 90

    @property
    def max_retries(self) -> int:
        return max(self.max_attempts - 1, 0)

    def clamp_radius(self, radius_km: Optional[float]) -> float:
        """Clamp a radius into the supported range; never raises."""
        if radius_km is None:
            return self.default_radius_km
        try:
            radius = float(radius_km)
        except (TypeError, ValueError):
            return self.default_radius_km
        if radius != radius:  # NaN
            return self.default_radius_km
        return max(self.min_radius_km, min(self.max_radius_km, radius))

    @classmethod
    def from_env(cls, prefix: str = "PUSH_DISPATCH_") -> "DispatchConfig":
        """Build config from environment variables, e.g. PUSH_DISPATCH_GROUP_THRESHOLD."""
        settings = DispatchSettings(_env_prefix=prefix)
        return cls(**settings.model_dump())


DEFAULT_DISPATCH_CONFIG = DispatchConfig()


class DispatchSettings(BaseSettings):
    """Dispatch settings loaded from environment variables (prefixed PUSH_DISPATCH_).

    List-valued settings are JSON, e.g.
    PUSH_DISPATCH_RETRY_DELAYS_SECONDS='[1, 5, 15, 60]'.
    """

    default_priority: NotificationPriority = NotificationPriority.MEDIUM

    group_threshold: int = 3
    group_window_seconds: float = 300.0
    group_display_cap: int = 5
    grouping_sweep_seconds: float = 15.0
    ungrouped_categories: frozenset[NotificationCategory] = Field(default_factory=_ungrouped_defaults)

    max_attempts: int = Field(default=4, ge=1)
    retry_delays_seconds: tuple[float, ...] = Field(default=(1.0, 5.0, 15.0, 60.0), min_length=1)

    geofence_timeout_seconds: float = 3.0
    gateway_timeout_seconds: float = 5.0

    min_radius_km: float = 1.0
    max_radius_km: float = 100.0
    default_radius_km: float = 5.0
    listing_search_radius_km: float = 100.0

    gateway_url: str = ""
    gateway_api_key: Optional[str] = None
    apns_topic: str = "club.foodshare.app"

    stale_token_days: int = 90

    model_config = {
        "env_prefix": "PUSH_DISPATCH_",
        "env_file": ".env",
        "extra": "ignore",
    }

    @field_validator("default_priority", mode="before")
    @classmethod
    def _lowercase_priority(cls, value):
        return value.lower() if isinstance(value, str) else value


# Category-specific configurations. A category without "priority" falls back
# to DispatchConfig.default_priority. With "collapse_per_event" each
# event gets its own OS collapse id; otherwise one id per entity.
CATEGORY_CONFIGS: dict[NotificationCategory, dict] = {
    NotificationCategory.NEW_LISTING: {
        "description": "New food listings near the user",
        "priority": NotificationPriority.MEDIUM,
        "title": "{title}",
        "body": "New listing near you",
        "grouped_title": "{count} new listings near you",
        "route": "listing",
        "channel_id": "new_listings",
        "ttl_seconds": 3600,
    },
    NotificationCategory.MESSAGE: {
        "description": "Direct chat messages",
        "priority": NotificationPriority.HIGH,
        "title": "{title}",
        "body": "{body}",
        "route": "conversation",
        "collapse_per_event": True,
        "channel_id": "messages",
        "ttl_seconds": 86400,
    },
    NotificationCategory.RESERVATION_ACCEPTED: {
        "description": "A reservation request was accepted",
        "priority": NotificationPriority.HIGH,
        "title": "Reservation accepted",
        "body": "{title} is reserved for you",
        "route": "arrangement",
        "channel_id": "reservations",
        "ttl_seconds": 7200,
    },
    NotificationCategory.RESERVATION_UPDATED: {
        "description": "Other reservation status changes",
        "priority": NotificationPriority.MEDIUM,
        "title": "Reservation update",
        "body": "{body}",
        "grouped_title": "{count} reservation updates",
        "route": "arrangement",
        "channel_id": "reservations",
        "ttl_seconds": 7200,
    },
    NotificationCategory.EXPIRY_WARNING: {
        "description": "A listing is about to expire",
        "title": "Listing expiring soon",
        "body": "{title} expires soon",
        "grouped_title": "{count} listings expiring soon",
        "route": "listing",
        "channel_id": "listing_expiry",
        "ttl_seconds": 3600,
    },
    NotificationCategory.WEEKLY_SUMMARY: {
        "description": "Weekly impact summary",
        "priority": NotificationPriority.LOW,
        "title": "{title}",
        "body": "{body}",
        "route": "profile",
        "channel_id": "summaries",
        "ttl_seconds": 604800,
    },
    NotificationCategory.TIPS: {
        "description": "Food-saving tips",
        "priority": NotificationPriority.LOW,
        "title": "{title}",
        "body": "{body}",
        "route": "tips",
        "channel_id": "tips",
        "ttl_seconds": 604800,
    },
    NotificationCategory.REVIEW: {
        "description": "New reviews received",
        "title": "New review",
        "body": "{body}",
        "grouped_title": "{count} new reviews",
        "route": "reviews",
        "channel_id": "community",
        "ttl_seconds": 86400,
    },
    NotificationCategory.CHALLENGE: {
        "description": "Community challenge updates",
        "title": "{title}",
        "body": "{body}",
        "grouped_title": "{count} challenge updates",
        "route": "challenge",
        "channel_id": "community",
        "ttl_seconds": 86400,
    },
    NotificationCategory.FORUM: {
        "description": "Forum replies and mentions",
        "title": "{title}",
        "body": "{body}",
        "grouped_title": "{count} new forum replies",
        "route": "forum",
        "collapse_per_event": True,
        "channel_id": "community",
        "ttl_seconds": 86400,
    },
}
