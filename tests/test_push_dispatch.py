"""Tests for push dispatch config, models, stores, geofence and eligibility."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.push_dispatch.config import (
    CATEGORY_CONFIGS,
    DEFAULT_DISPATCH_CONFIG,
    DispatchConfig,
    ExclusionReason,
    NotificationCategory,
    NotificationPriority,
    Platform,
)
from src.push_dispatch.devices import InMemoryDeviceRegistry
from src.push_dispatch.eligibility import EligibilityFilter, Excluded, Included
from src.push_dispatch.exceptions import ConfigurationMissing, ResolutionUnavailable
from src.push_dispatch.geofence import GeofenceResolver, InMemoryGeofenceIndex, NearbyUser
from src.push_dispatch.models import (
    DeviceToken,
    DispatchStats,
    DomainEvent,
    GeoPoint,
    NotificationIntent,
    NotificationPreferences,
    ProcessingResult,
    RecipientCandidate,
)
from src.push_dispatch.preferences import InMemoryPreferenceStore, load_preferences

SF = GeoPoint(37.7749, -122.4194)
# ~111.2 km per degree of latitude on the haversine sphere
KM_PER_LAT_DEGREE = 111.195


def north_of(point: GeoPoint, km: float) -> GeoPoint:
    return GeoPoint(point.latitude + km / KM_PER_LAT_DEGREE, point.longitude)


def utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=timezone.utc)


def candidate(user_id="u1", prefs=None, tokens=1) -> RecipientCandidate:
    return RecipientCandidate(
        user_id=user_id,
        preferences=prefs or NotificationPreferences.defaults(user_id),
        tokens=[DeviceToken(token=f"{user_id}-tok-{i}", user_id=user_id, platform=Platform.IOS) for i in range(tokens)],
    )


class TestDispatchConfig:
    """Tests for dispatch configuration."""

    def test_defaults(self):
        config = DEFAULT_DISPATCH_CONFIG
        assert config.group_threshold == 3
        assert config.group_window_seconds == 300
        assert config.retry_delays_seconds == (1, 5, 15, 60)
        assert config.max_attempts == 4
        assert config.max_retries == 3
        assert config.default_priority == NotificationPriority.MEDIUM

    def test_high_priority_categories_ungrouped(self):
        assert NotificationCategory.MESSAGE in DEFAULT_DISPATCH_CONFIG.ungrouped_categories
        assert NotificationCategory.RESERVATION_ACCEPTED in DEFAULT_DISPATCH_CONFIG.ungrouped_categories
        assert NotificationCategory.NEW_LISTING not in DEFAULT_DISPATCH_CONFIG.ungrouped_categories

    @pytest.mark.parametrize("radius,expected", [
        (0.2, 1.0),
        (-5, 1.0),
        (250, 100.0),
        (12.5, 12.5),
        (None, 5.0),
        (float("nan"), 5.0),
        ("abc", 5.0),
    ])
    def test_clamp_radius(self, radius, expected):
        assert DEFAULT_DISPATCH_CONFIG.clamp_radius(radius) == expected

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PUSH_DISPATCH_GROUP_THRESHOLD", "4")
        monkeypatch.setenv("PUSH_DISPATCH_RETRY_DELAYS_SECONDS", "[2, 4]")
        monkeypatch.setenv("PUSH_DISPATCH_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("PUSH_DISPATCH_DEFAULT_PRIORITY", "LOW")
        monkeypatch.setenv("PUSH_DISPATCH_UNGROUPED_CATEGORIES", '["message", "tips"]')
        monkeypatch.setenv("PUSH_DISPATCH_GATEWAY_URL", "https://push.example.test")

        config = DispatchConfig.from_env()
        assert config.group_threshold == 4
        assert config.retry_delays_seconds == (2.0, 4.0)
        assert config.max_attempts == 3
        assert config.max_retries == 2
        assert config.default_priority == NotificationPriority.LOW
        assert config.ungrouped_categories == {NotificationCategory.MESSAGE, NotificationCategory.TIPS}
        assert config.gateway_url == "https://push.example.test"

    def test_from_env_custom_prefix(self, monkeypatch):
        monkeypatch.setenv("STAGING_PUSH_GROUP_WINDOW_SECONDS", "60")
        config = DispatchConfig.from_env(prefix="STAGING_PUSH_")
        assert config.group_window_seconds == 60.0
        assert config.group_threshold == 3

    def test_from_env_rejects_bad_values(self, monkeypatch):
        monkeypatch.setenv("PUSH_DISPATCH_MAX_ATTEMPTS", "0")
        with pytest.raises(ValidationError):
            DispatchConfig.from_env()

    def test_every_category_has_route(self):
        for category in NotificationCategory:
            assert "route" in CATEGORY_CONFIGS[category]


class TestModels:
    """Tests for data models."""

    def test_distance(self):
        assert SF.distance_km(SF) == 0
        assert SF.distance_km(north_of(SF, 3)) == pytest.approx(3.0, abs=0.01)

    def test_event_entity_ref(self):
        event = DomainEvent(category=NotificationCategory.NEW_LISTING, entity_id="42")
        assert event.entity_ref == "listing/42"
        msg = DomainEvent(category=NotificationCategory.MESSAGE, entity_id="room-7")
        assert msg.entity_ref == "conversation/room-7"

    def test_event_is_immutable(self):
        event = DomainEvent(category=NotificationCategory.TIPS, entity_id="1")
        with pytest.raises(AttributeError):
            event.title = "changed"

    def test_intent_keys(self):
        intent = NotificationIntent(
            recipient_id="u1",
            category=NotificationCategory.NEW_LISTING,
            priority=NotificationPriority.MEDIUM,
            title="Fresh Bread",
            body="",
            entity_ref="listing/42",
            deep_link="foodshare://listing/42",
        )
        assert intent.grouping_key == "u1:new_listing"
        assert intent.collapse_id == "new_listing:listing/42"
        assert not intent.is_collapsed

    def test_token_to_dict_masks_token(self):
        token = DeviceToken(token="abcdefghijklmnop", user_id="u1", platform=Platform.ANDROID)
        assert token.to_dict()["token"] == "abcdefgh..."

    def test_processing_result_exclusions(self):
        result = ProcessingResult()
        result.record_exclusion("quiet_hours")
        result.record_exclusion("quiet_hours")
        result.record_exclusion("no_devices")
        assert result.excluded == 3
        assert result.exclusions == {"quiet_hours": 2, "no_devices": 1}

    def test_stats_per_category(self):
        stats = DispatchStats()
        stats.record_excluded(NotificationCategory.TIPS, "quiet_hours")
        stats.record_dropped(NotificationCategory.MESSAGE)
        data = stats.to_dict()
        assert data["excluded"] == 1
        assert data["excluded_by_category"] == {"tips": 1}
        assert data["dropped_by_category"] == {"message": 1}


class TestQuietHours:
    """Tests for quiet hours evaluation in the recipient's local time."""

    def test_wraparound_window(self):
        prefs = NotificationPreferences(user_id="u1", quiet_hours_start="22:00", quiet_hours_end="06:00")
        assert prefs.is_in_quiet_hours(utc(23, 30))
        assert not prefs.is_in_quiet_hours(utc(12, 0))
        assert prefs.is_in_quiet_hours(utc(3, 0))
        assert prefs.is_in_quiet_hours(utc(6, 0))

    def test_same_day_window(self):
        prefs = NotificationPreferences(user_id="u1", quiet_hours_start="13:00", quiet_hours_end="15:00")
        assert prefs.is_in_quiet_hours(utc(14, 0))
        assert not prefs.is_in_quiet_hours(utc(12, 59))
        assert not prefs.is_in_quiet_hours(utc(15, 1))

    def test_uses_recipient_timezone(self):
        prefs = NotificationPreferences(
            user_id="u1",
            quiet_hours_start="22:00",
            quiet_hours_end="06:00",
            timezone="America/Los_Angeles",
        )
        # 07:30 UTC is 23:30 in Los Angeles (PST) on this date
        assert prefs.is_in_quiet_hours(utc(7, 30))
        # 20:00 UTC is 12:00 in Los Angeles
        assert not prefs.is_in_quiet_hours(utc(20, 0))

    def test_no_window_configured(self):
        assert not NotificationPreferences.defaults("u1").is_in_quiet_hours(utc(23, 30))

    def test_malformed_window_ignored(self):
        prefs = NotificationPreferences(user_id="u1", quiet_hours_start="25:00", quiet_hours_end="06:00")
        assert not prefs.is_in_quiet_hours(utc(23, 30))


class TestPreferenceStore:
    """Tests for the in-memory preference store."""

    @pytest.mark.asyncio
    async def test_missing_record_raises(self):
        store = InMemoryPreferenceStore()
        with pytest.raises(ConfigurationMissing):
            await store.get_preferences("ghost")

    @pytest.mark.asyncio
    async def test_missing_record_falls_back_to_defaults(self):
        prefs = await load_preferences(InMemoryPreferenceStore(), "ghost")
        assert prefs.user_id == "ghost"
        assert all(prefs.is_category_enabled(c) for c in NotificationCategory)
        assert not prefs.has_quiet_hours

    def test_disable_and_enable_category(self):
        store = InMemoryPreferenceStore()
        store.disable_category("u1", NotificationCategory.TIPS)
        assert store.get_disabled_categories("u1") == [NotificationCategory.TIPS]
        store.enable_category("u1", NotificationCategory.TIPS)
        assert store.get_disabled_categories("u1") == []

    def test_push_master_switch(self):
        store = InMemoryPreferenceStore()
        store.update_preferences("u1", push_enabled=False)
        assert set(store.get_disabled_categories("u1")) == set(NotificationCategory)

    def test_quiet_hours_roundtrip(self):
        store = InMemoryPreferenceStore()
        prefs = store.set_quiet_hours("u1", "22:00", "06:00", timezone="Europe/Berlin")
        assert prefs.has_quiet_hours
        assert prefs.timezone == "Europe/Berlin"
        assert not store.disable_quiet_hours("u1").has_quiet_hours

    def test_reset_to_defaults(self):
        store = InMemoryPreferenceStore()
        store.update_preferences("u1", geofence_radius_km=20)
        assert store.reset_to_defaults("u1").geofence_radius_km == 5.0


class TestDeviceRegistry:
    """Tests for the device token registry."""

    @pytest.mark.asyncio
    async def test_register_and_fetch(self):
        registry = InMemoryDeviceRegistry()
        registry.register_token("u1", "tok-a", Platform.IOS)
        registry.register_token("u1", "tok-b", Platform.ANDROID)
        tokens = await registry.get_active_tokens("u1")
        assert [t.token for t in tokens] == ["tok-a", "tok-b"]
        assert await registry.get_active_tokens("u2") == []

    @pytest.mark.asyncio
    async def test_reregistration_moves_ownership(self):
        registry = InMemoryDeviceRegistry()
        registry.register_token("u1", "shared", Platform.IOS)
        registry.register_token("u2", "shared", Platform.IOS)
        assert await registry.get_active_tokens("u1") == []
        assert [t.user_id for t in await registry.get_active_tokens("u2")] == ["u2"]
        assert registry.get_token_count() == 1

    @pytest.mark.asyncio
    async def test_prune_is_idempotent(self):
        registry = InMemoryDeviceRegistry()
        registry.register_token("u1", "tok-a", Platform.WEB)
        assert await registry.prune_token("tok-a") is True
        assert await registry.prune_token("tok-a") is False
        assert await registry.get_active_tokens("u1") == []
        assert registry.get_stats()["unique_users"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_prunes_remove_once(self):
        registry = InMemoryDeviceRegistry()
        registry.register_token("u1", "tok-a", Platform.IOS)
        results = await asyncio.gather(*(registry.prune_token("tok-a") for _ in range(5)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_confirm_token(self):
        registry = InMemoryDeviceRegistry()
        registry.register_token("u1", "tok-a", Platform.IOS)
        await registry.confirm_token("tok-a")
        await registry.confirm_token("unknown")
        assert registry.get_token("tok-a").last_confirmed_at is not None

    def test_stale_token_cleanup(self):
        registry = InMemoryDeviceRegistry()
        old = registry.register_token("u1", "old", Platform.ANDROID)
        registry.register_token("u1", "fresh", Platform.IOS)
        old.registered_at = datetime.now(timezone.utc) - timedelta(days=120)

        assert [t.token for t in registry.get_stale_tokens()] == ["old"]
        assert registry.cleanup_stale_tokens() == 1
        assert registry.get_platform_breakdown() == {"ios": 1}


class TestGeofence:
    """Tests for geofence candidate resolution."""

    def _setup(self):
        index = InMemoryGeofenceIndex()
        store = InMemoryPreferenceStore()
        index.update_location("A", north_of(SF, 3))
        index.update_location("B", north_of(SF, 10))
        index.update_location("C", north_of(SF, -3))
        store.update_preferences("A", geofence_radius_km=5)
        store.disable_category("C", NotificationCategory.NEW_LISTING)
        return index, store

    @pytest.mark.asyncio
    async def test_index_returns_sorted_hits(self):
        index, _ = self._setup()
        hits = await index.find_nearby_users(SF, 12)
        assert [h.user_id for h in hits][-1] == "B"
        assert all(isinstance(h, NearbyUser) for h in hits)
        assert hits[0].distance_km <= hits[-1].distance_km

    @pytest.mark.asyncio
    async def test_resolver_filters_radius_and_category(self):
        index, store = self._setup()
        resolver = GeofenceResolver(index, store)
        users = await resolver.find_nearby_users(SF, 100, category_filter=NotificationCategory.NEW_LISTING)
        assert users == {"A"}

    @pytest.mark.asyncio
    async def test_resolver_without_category_filter(self):
        index, store = self._setup()
        resolver = GeofenceResolver(index, store)
        users = await resolver.find_nearby_users(SF, 100)
        assert users == {"A", "C"}

    @pytest.mark.asyncio
    async def test_radius_is_clamped(self):
        index, store = self._setup()
        resolver = GeofenceResolver(index, store)
        # 0 clamps to 1 km: nobody is that close
        assert await resolver.find_nearby_users(SF, 0) == set()
        # 10_000 clamps to 100 km instead of raising
        assert "A" in await resolver.find_nearby_users(SF, 10_000)

    @pytest.mark.asyncio
    async def test_excluded_users_skipped(self):
        index, store = self._setup()
        resolver = GeofenceResolver(index, store)
        assert await resolver.find_nearby_users(SF, 100, exclude=["A"]) == {"C"}

    @pytest.mark.asyncio
    async def test_index_failure_raises_resolution_unavailable(self):
        class BrokenIndex:
            async def find_nearby_users(self, point, radius_km):
                raise ConnectionError("index down")

        resolver = GeofenceResolver(BrokenIndex(), InMemoryPreferenceStore())
        with pytest.raises(ResolutionUnavailable) as exc_info:
            await resolver.find_nearby_users(SF, 5)
        assert isinstance(exc_info.value.cause, ConnectionError)

    @pytest.mark.asyncio
    async def test_index_timeout_raises_resolution_unavailable(self):
        class SlowIndex:
            async def find_nearby_users(self, point, radius_km):
                await asyncio.sleep(10)
                return []

        config = DispatchConfig(geofence_timeout_seconds=0.01)
        resolver = GeofenceResolver(SlowIndex(), InMemoryPreferenceStore(), config)
        with pytest.raises(ResolutionUnavailable):
            await resolver.find_nearby_users(SF, 5)


class TestEligibilityFilter:
    """Tests for the eligibility filter."""

    def setup_method(self):
        self.filter = EligibilityFilter()
        self.listing = DomainEvent(
            category=NotificationCategory.NEW_LISTING,
            entity_id="42",
            location=SF,
            title="Fresh Bread",
        )

    def test_included_with_category_priority(self):
        assert self.filter.evaluate(candidate(), self.listing, utc(12)) == Included(NotificationPriority.MEDIUM)

    @pytest.mark.parametrize("category,priority", [
        (NotificationCategory.MESSAGE, NotificationPriority.HIGH),
        (NotificationCategory.RESERVATION_ACCEPTED, NotificationPriority.HIGH),
        (NotificationCategory.NEW_LISTING, NotificationPriority.MEDIUM),
        (NotificationCategory.RESERVATION_UPDATED, NotificationPriority.MEDIUM),
        (NotificationCategory.WEEKLY_SUMMARY, NotificationPriority.LOW),
        (NotificationCategory.TIPS, NotificationPriority.LOW),
        (NotificationCategory.EXPIRY_WARNING, NotificationPriority.MEDIUM),
        (NotificationCategory.FORUM, NotificationPriority.MEDIUM),
    ])
    def test_priority_table(self, category, priority):
        assert self.filter.priority_for(category) == priority

    def test_unmapped_priority_is_configurable(self):
        low_default = EligibilityFilter(DispatchConfig(default_priority=NotificationPriority.LOW))
        assert low_default.priority_for(NotificationCategory.REVIEW) == NotificationPriority.LOW
        assert low_default.priority_for(NotificationCategory.MESSAGE) == NotificationPriority.HIGH

    def test_category_disabled_excluded(self):
        prefs = NotificationPreferences(user_id="u1", categories={NotificationCategory.NEW_LISTING: False})
        assert self.filter.evaluate(candidate(prefs=prefs), self.listing, utc(12)) == Excluded(
            ExclusionReason.CATEGORY_DISABLED
        )

    def test_push_disabled_excluded(self):
        prefs = NotificationPreferences(user_id="u1", push_enabled=False)
        decision = self.filter.evaluate(candidate(prefs=prefs), self.listing, utc(12))
        assert decision == Excluded(ExclusionReason.CATEGORY_DISABLED)

    def test_no_devices_excluded(self):
        assert self.filter.evaluate(candidate(tokens=0), self.listing, utc(12)) == Excluded(
            ExclusionReason.NO_DEVICES
        )

    def test_first_matching_exclusion_wins(self):
        prefs = NotificationPreferences(
            user_id="u1",
            categories={NotificationCategory.NEW_LISTING: False},
            quiet_hours_start="22:00",
            quiet_hours_end="06:00",
        )
        decision = self.filter.evaluate(candidate(prefs=prefs, tokens=0), self.listing, utc(23, 30))
        assert decision == Excluded(ExclusionReason.CATEGORY_DISABLED)

    def test_quiet_hours_suppress_non_high(self):
        prefs = NotificationPreferences(user_id="u1", quiet_hours_start="22:00", quiet_hours_end="06:00")
        decision = self.filter.evaluate(candidate(prefs=prefs), self.listing, utc(23, 30))
        assert decision == Excluded(ExclusionReason.QUIET_HOURS)
        assert self.filter.evaluate(candidate(prefs=prefs), self.listing, utc(12)) == Included(
            NotificationPriority.MEDIUM
        )

    def test_quiet_hours_do_not_suppress_high(self):
        prefs = NotificationPreferences(user_id="u1", quiet_hours_start="22:00", quiet_hours_end="06:00")
        event = DomainEvent(category=NotificationCategory.RESERVATION_ACCEPTED, entity_id="r1", recipient_ids=("u1",))
        assert self.filter.evaluate(candidate(prefs=prefs), event, utc(23, 30)) == Included(NotificationPriority.HIGH)

    def test_deterministic(self):
        c = candidate()
        decisions = {self.filter.evaluate(c, self.listing, utc(12)) for _ in range(5)}
        assert len(decisions) == 1

    def test_build_intent(self):
        intent = self.filter.build_intent(candidate(), self.listing, NotificationPriority.MEDIUM)
        assert intent.recipient_id == "u1"
        assert intent.title == "Fresh Bread"
        assert intent.body == "New listing near you"
        assert intent.entity_ref == "listing/42"
        assert intent.deep_link == "foodshare://listing/42"
        assert intent.entity_ids == ["42"]
        assert intent.source_event_id == self.listing.event_id

    def test_build_intent_fills_template(self):
        event = DomainEvent(
            category=NotificationCategory.RESERVATION_ACCEPTED,
            entity_id="r9",
            title="Veggie box",
        )
        intent = self.filter.build_intent(candidate(), event, NotificationPriority.HIGH)
        assert intent.title == "Reservation accepted"
        assert intent.body == "Veggie box is reserved for you"
        assert intent.deep_link == "foodshare://arrangement/r9"
