"""Eligibility filter: per (recipient, event) inclusion and priority."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from src.push_dispatch.config import (
    CATEGORY_CONFIGS,
    DEFAULT_DISPATCH_CONFIG,
    DispatchConfig,
    ExclusionReason,
    NotificationCategory,
    NotificationPriority,
)
from src.push_dispatch.models import DomainEvent, NotificationIntent, RecipientCandidate

logger = logging.getLogger(__name__)

DEEP_LINK_SCHEME = "foodshare://"


@dataclass(frozen=True)
class Included:
    priority: NotificationPriority


@dataclass(frozen=True)
class Excluded:
    reason: ExclusionReason


Decision = Union[Included, Excluded]


class _SafeFormat(dict):
    def __missing__(self, key):
        return ""


def _render(template: str, values: dict) -> str:
    return template.format_map(_SafeFormat(values)).strip()


class EligibilityFilter:
    """Decides whether a candidate is notified about an event, and how urgently.

    Deterministic for the same (candidate, event, now). The first matching
    exclusion wins: category disabled, no devices, quiet hours.
    """

    def __init__(self, config: Optional[DispatchConfig] = None):
        self.config = config or DEFAULT_DISPATCH_CONFIG

    def priority_for(self, category: NotificationCategory) -> NotificationPriority:
        """Category priority; unmapped categories use the configured default."""
        return CATEGORY_CONFIGS.get(category, {}).get("priority", self.config.default_priority)

    def evaluate(
        self,
        candidate: RecipientCandidate,
        event: DomainEvent,
        now: Optional[datetime] = None,
    ) -> Decision:
        now = now or datetime.now(timezone.utc)
        prefs = candidate.preferences

        if not prefs.is_category_enabled(event.category):
            return Excluded(ExclusionReason.CATEGORY_DISABLED)

        if not candidate.has_devices:
            return Excluded(ExclusionReason.NO_DEVICES)

        priority = self.priority_for(event.category)
        if priority != NotificationPriority.HIGH and prefs.is_in_quiet_hours(now):
            return Excluded(ExclusionReason.QUIET_HOURS)

        return Included(priority)

    def build_intent(
        self,
        candidate: RecipientCandidate,
        event: DomainEvent,
        priority: NotificationPriority,
    ) -> NotificationIntent:
        """Render the notification content for an included candidate."""
        category_config = CATEGORY_CONFIGS.get(event.category, {})
        values = {"title": event.title, "body": event.body, **event.data}

        title = _render(category_config.get("title", "{title}"), values) or event.title
        body = _render(category_config.get("body", "{body}"), values)

        collapse_id = f"{event.category.value}:{event.entity_ref}"
        if category_config.get("collapse_per_event"):
            collapse_id = f"{collapse_id}:{event.event_id}"

        return NotificationIntent(
            recipient_id=candidate.user_id,
            category=event.category,
            priority=priority,
            title=title,
            body=body,
            entity_ref=event.entity_ref,
            deep_link=f"{DEEP_LINK_SCHEME}{event.entity_ref}",
            collapse_id=collapse_id,
            entity_ids=[event.entity_id],
            source_event_id=event.event_id,
            data={k: str(v) for k, v in event.data.items()},
        )
