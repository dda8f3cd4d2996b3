"""FoodShare Push Notification Dispatch.

Event-driven, geofenced, preference-aware notification fan-out:
- Geofence candidate resolution for nearby listings
- Eligibility (category toggles, quiet hours, priority)
- Burst grouping per recipient and category
- Per-platform payloads and delivery through a push gateway
- Bounded retries and stale token pruning
"""

from src.push_dispatch.config import (
    NotificationCategory,
    NotificationPriority,
    Platform,
    InterruptionLevel,
    DeliveryOutcome,
    AttemptState,
    ExclusionReason,
    DispatchConfig,
    DispatchSettings,
    DEFAULT_DISPATCH_CONFIG,
    CATEGORY_CONFIGS,
)
from src.push_dispatch.models import (
    GeoPoint,
    DomainEvent,
    NotificationPreferences,
    DeviceToken,
    RecipientCandidate,
    NotificationIntent,
    DeliveryResult,
    DeliveryAttempt,
    DispatchReport,
    ProcessingResult,
    DispatchStats,
)
from src.push_dispatch.exceptions import (
    PushDispatchError,
    ResolutionUnavailable,
    DeliveryFailure,
    RetryableDeliveryFailure,
    PermanentDeliveryFailure,
    ConfigurationMissing,
)
from src.push_dispatch.preferences import PreferenceStore, InMemoryPreferenceStore, load_preferences
from src.push_dispatch.devices import DeviceRegistry, InMemoryDeviceRegistry
from src.push_dispatch.geofence import GeofenceIndex, GeofenceResolver, InMemoryGeofenceIndex, NearbyUser
from src.push_dispatch.eligibility import EligibilityFilter, Included, Excluded
from src.push_dispatch.grouping import GroupingAggregator
from src.push_dispatch.payloads import (
    ApnsPayload,
    FcmPayload,
    WebPushPayload,
    build_payload,
    web_push_topic,
    build_local_payload,
)
from src.push_dispatch.gateway import PushGateway, HttpPushGateway, LoggingPushGateway, classify_response
from src.push_dispatch.retry import RetryScheduler
from src.push_dispatch.dispatcher import Dispatcher
from src.push_dispatch.pipeline import NotificationPipeline, build_pipeline

__all__ = [
    # Config
    "NotificationCategory",
    "NotificationPriority",
    "Platform",
    "InterruptionLevel",
    "DeliveryOutcome",
    "AttemptState",
    "ExclusionReason",
    "DispatchConfig",
    "DispatchSettings",
    "DEFAULT_DISPATCH_CONFIG",
    "CATEGORY_CONFIGS",
    # Models
    "GeoPoint",
    "DomainEvent",
    "NotificationPreferences",
    "DeviceToken",
    "RecipientCandidate",
    "NotificationIntent",
    "DeliveryResult",
    "DeliveryAttempt",
    "DispatchReport",
    "ProcessingResult",
    "DispatchStats",
    # Errors
    "PushDispatchError",
    "ResolutionUnavailable",
    "DeliveryFailure",
    "RetryableDeliveryFailure",
    "PermanentDeliveryFailure",
    "ConfigurationMissing",
    # Stores
    "PreferenceStore",
    "InMemoryPreferenceStore",
    "load_preferences",
    "DeviceRegistry",
    "InMemoryDeviceRegistry",
    "GeofenceIndex",
    "GeofenceResolver",
    "InMemoryGeofenceIndex",
    "NearbyUser",
    # Stages
    "EligibilityFilter",
    "Included",
    "Excluded",
    "GroupingAggregator",
    "ApnsPayload",
    "FcmPayload",
    "WebPushPayload",
    "build_payload",
    "web_push_topic",
    "build_local_payload",
    "PushGateway",
    "HttpPushGateway",
    "LoggingPushGateway",
    "classify_response",
    "RetryScheduler",
    "Dispatcher",
    "NotificationPipeline",
    "build_pipeline",
]
