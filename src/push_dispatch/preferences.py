"""User notification preferences."""

import logging
from typing import Optional, Protocol, runtime_checkable

from src.push_dispatch.config import NotificationCategory
from src.push_dispatch.exceptions import ConfigurationMissing
from src.push_dispatch.models import NotificationPreferences

logger = logging.getLogger(__name__)


@runtime_checkable
class PreferenceStore(Protocol):
    """Read-only preference lookup used by the pipeline."""

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        """Return the user's preferences or raise ConfigurationMissing."""
        ...


async def load_preferences(store: PreferenceStore, user_id: str) -> NotificationPreferences:
    """Fetch preferences, falling back to defaults when no record exists."""
    try:
        return await store.get_preferences(user_id)
    except ConfigurationMissing:
        logger.debug("No preferences for user %s, using defaults", user_id)
        return NotificationPreferences.defaults(user_id)


class InMemoryPreferenceStore:
    """Dictionary-backed preference store for local runs and tests."""

    def __init__(self):
        self._preferences: dict[str, NotificationPreferences] = {}

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        pref = self._preferences.get(user_id)
        if pref is None:
            raise ConfigurationMissing(user_id)
        return pref

    def get_or_create(self, user_id: str) -> NotificationPreferences:
        if user_id not in self._preferences:
            self._preferences[user_id] = NotificationPreferences.defaults(user_id)
        return self._preferences[user_id]

    def set_preferences(self, preferences: NotificationPreferences) -> NotificationPreferences:
        self._preferences[preferences.user_id] = preferences
        return preferences

    def update_preferences(
        self,
        user_id: str,
        push_enabled: Optional[bool] = None,
        quiet_hours_start: Optional[str] = None,
        quiet_hours_end: Optional[str] = None,
        timezone: Optional[str] = None,
        geofence_radius_km: Optional[float] = None,
    ) -> NotificationPreferences:
        """Update a user's preferences, creating the record if missing."""
        pref = self.get_or_create(user_id)

        if push_enabled is not None:
            pref.push_enabled = push_enabled
        if quiet_hours_start is not None:
            pref.quiet_hours_start = quiet_hours_start
        if quiet_hours_end is not None:
            pref.quiet_hours_end = quiet_hours_end
        if timezone is not None:
            pref.timezone = timezone
        if geofence_radius_km is not None:
            pref.geofence_radius_km = geofence_radius_km

        return pref

    def set_quiet_hours(self, user_id: str, start: str, end: str, timezone: str = "UTC") -> NotificationPreferences:
        return self.update_preferences(
            user_id,
            quiet_hours_start=start,
            quiet_hours_end=end,
            timezone=timezone,
        )

    def disable_quiet_hours(self, user_id: str) -> NotificationPreferences:
        pref = self.get_or_create(user_id)
        pref.quiet_hours_start = None
        pref.quiet_hours_end = None
        return pref

    def enable_category(self, user_id: str, category: NotificationCategory) -> NotificationPreferences:
        pref = self.get_or_create(user_id)
        pref.categories[category] = True
        return pref

    def disable_category(self, user_id: str, category: NotificationCategory) -> NotificationPreferences:
        pref = self.get_or_create(user_id)
        pref.categories[category] = False
        return pref

    def get_disabled_categories(self, user_id: str) -> list[NotificationCategory]:
        pref = self._preferences.get(user_id)
        if pref is None:
            return []
        return [cat for cat in NotificationCategory if not pref.is_category_enabled(cat)]

    def reset_to_defaults(self, user_id: str) -> NotificationPreferences:
        self._preferences.pop(user_id, None)
        return self.get_or_create(user_id)
