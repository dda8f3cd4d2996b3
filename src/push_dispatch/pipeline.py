"""Notification pipeline: the single inbound entry point for domain events.

    event → recipients (geofence or explicit) → eligibility → grouping
          → dispatcher → retry scheduler / token pruning
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from src.logging_config import EventContext, bind_user, log_performance
from src.push_dispatch.config import (
    DEFAULT_DISPATCH_CONFIG,
    DispatchConfig,
    ExclusionReason,
    LOCATION_SCOPED_CATEGORIES,
    NotificationCategory,
    NotificationPriority,
)
from src.push_dispatch.devices import DeviceRegistry, InMemoryDeviceRegistry
from src.push_dispatch.dispatcher import Dispatcher
from src.push_dispatch.eligibility import EligibilityFilter, Excluded
from src.push_dispatch.gateway import HttpPushGateway, LoggingPushGateway, PushGateway
from src.push_dispatch.geofence import GeofenceIndex, GeofenceResolver, InMemoryGeofenceIndex
from src.push_dispatch.grouping import GroupingAggregator
from src.push_dispatch.models import (
    DeliveryResult,
    DeviceToken,
    DispatchStats,
    DomainEvent,
    NotificationIntent,
    ProcessingResult,
    RecipientCandidate,
)
from src.push_dispatch.preferences import InMemoryPreferenceStore, PreferenceStore, load_preferences
from src.push_dispatch.retry import RetryScheduler, SleepFn

logger = logging.getLogger(__name__)

# A newer event about the same reservation makes pending retries for it redundant
RESERVATION_CATEGORIES = frozenset({
    NotificationCategory.RESERVATION_ACCEPTED,
    NotificationCategory.RESERVATION_UPDATED,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unique(user_ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered = []
    for user_id in user_ids:
        if user_id and user_id not in seen:
            seen.add(user_id)
            ordered.append(user_id)
    return ordered


class NotificationPipeline:
    """Wires every stage together behind ``handle_event``.

    Example:
        pipeline = build_pipeline()
        pipeline.start()
        result = await pipeline.handle_event(event)
        await pipeline.stop()
    """

    def __init__(
        self,
        preference_store: PreferenceStore,
        registry: DeviceRegistry,
        geofence_index: GeofenceIndex,
        gateway: PushGateway,
        config: Optional[DispatchConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.config = config or DEFAULT_DISPATCH_CONFIG
        self.preference_store = preference_store
        self.registry = registry
        self.gateway = gateway
        self.stats = DispatchStats()
        self._clock = clock or _utcnow

        self.resolver = GeofenceResolver(geofence_index, preference_store, self.config)
        self.eligibility = EligibilityFilter(self.config)
        self.retry_scheduler = RetryScheduler(
            registry,
            self._redeliver,
            config=self.config,
            stats=self.stats,
            sleep=sleep,
            clock=self._clock,
        )
        self.dispatcher = Dispatcher(
            registry,
            gateway,
            config=self.config,
            stats=self.stats,
            retry_scheduler=self.retry_scheduler,
        )
        self.aggregator = GroupingAggregator(
            self.config,
            on_release=self._release_held,
            clock=self._clock,
        )

    @log_performance()
    async def handle_event(self, event: DomainEvent) -> ProcessingResult:
        """Process one domain event end to end.

        Failures for one recipient are counted in ``errors`` and never abort
        the others.

        Raises:
            ResolutionUnavailable: the geofence index could not be queried;
                the event source is expected to redeliver the event.
        """
        with EventContext(event_id=event.event_id, category=event.category.value):
            self.stats.events += 1
            result = ProcessingResult()
            self._cancel_superseded(event)

            recipients = await self._resolve_recipients(event, result)
            now = self._clock()

            outcomes = await asyncio.gather(
                *(self._evaluate(user_id, event, now, result) for user_id in recipients),
                return_exceptions=True,
            )

            intents: list[NotificationIntent] = []
            for user_id, outcome in zip(recipients, outcomes):
                if isinstance(outcome, Exception):
                    result.errors += 1
                    self.stats.errors += 1
                    logger.error("Evaluation failed for recipient %s: %s", user_id, outcome)
                elif outcome is not None:
                    intents.append(outcome)

            fresh_ids = {intent.intent_id for intent in intents}
            ready: list[NotificationIntent] = []
            held: list[NotificationIntent] = []
            for intent in intents:
                released = await self.aggregator.add(intent)
                if intent not in released:
                    result.held += 1
                for item in released:
                    if item.intent_id in fresh_ids:
                        ready.append(item)
                    else:
                        held.append(item)

            ready.extend(await self._drop_quiet(held, now))
            dispatched = await self.dispatch_intents(ready)
            result.dispatched += dispatched
            result.errors += len(ready) - dispatched

            logger.info(
                "Processed %s event %s: %d recipients, dispatched=%d excluded=%d held=%d errors=%d",
                event.category.value,
                event.event_id,
                len(recipients),
                result.dispatched,
                result.excluded,
                result.held,
                result.errors,
            )
            return result

    async def _resolve_recipients(self, event: DomainEvent, result: ProcessingResult) -> list[str]:
        if event.category in LOCATION_SCOPED_CATEGORIES and event.location is not None:
            radius = event.data.get("radius_km", self.config.listing_search_radius_km)
            nearby = await self.resolver.find_nearby_users(
                event.location,
                radius,
                category_filter=event.category,
                exclude=[event.actor_id] if event.actor_id else (),
            )
            return sorted(nearby)

        recipients = []
        for user_id in _unique(event.recipient_ids):
            if event.actor_id and user_id == event.actor_id:
                result.record_exclusion(ExclusionReason.SELF_ACTION.value)
                self.stats.record_excluded(event.category, ExclusionReason.SELF_ACTION.value)
                continue
            recipients.append(user_id)
        return recipients

    async def _evaluate(
        self,
        user_id: str,
        event: DomainEvent,
        now: datetime,
        result: ProcessingResult,
    ) -> Optional[NotificationIntent]:
        with bind_user(user_id):
            preferences = await load_preferences(self.preference_store, user_id)
            tokens = await self.registry.get_active_tokens(user_id)
            candidate = RecipientCandidate(user_id=user_id, preferences=preferences, tokens=tokens)

            decision = self.eligibility.evaluate(candidate, event, now)
            if isinstance(decision, Excluded):
                result.record_exclusion(decision.reason.value)
                self.stats.record_excluded(event.category, decision.reason.value)
                logger.debug("Excluded %s: %s", user_id, decision.reason.value)
                return None

            return self.eligibility.build_intent(candidate, event, decision.priority)

    async def dispatch_intents(self, intents: list[NotificationIntent]) -> int:
        """Dispatch intents one by one; returns how many were dispatched."""
        dispatched = 0
        for intent in intents:
            try:
                with bind_user(intent.recipient_id):
                    await self.dispatcher.dispatch(intent)
            except Exception:
                self.stats.errors += 1
                logger.exception("Dispatch failed for intent %s", intent.intent_id)
                continue
            dispatched += 1
            if intent.is_collapsed:
                self.stats.grouped += 1
        return dispatched

    async def _release_held(self, intents: list[NotificationIntent]) -> int:
        """Dispatch intents released from a group window."""
        return await self.dispatch_intents(await self._drop_quiet(intents, self._clock()))

    async def _drop_quiet(self, intents: list[NotificationIntent], now: datetime) -> list[NotificationIntent]:
        """Re-check quiet hours for intents that waited in a group window."""
        ready = []
        for intent in intents:
            if intent.priority != NotificationPriority.HIGH:
                try:
                    preferences = await load_preferences(self.preference_store, intent.recipient_id)
                except Exception as e:
                    logger.warning("Quiet-hours re-check failed for %s: %s", intent.recipient_id, e)
                else:
                    if preferences.is_in_quiet_hours(now):
                        self.stats.record_excluded(intent.category, ExclusionReason.QUIET_HOURS.value)
                        logger.info(
                            "Suppressed held %s intent for %s: quiet hours began",
                            intent.category.value,
                            intent.recipient_id,
                        )
                        continue
            ready.append(intent)
        return ready

    async def _redeliver(self, intent: NotificationIntent, token: DeviceToken) -> DeliveryResult:
        return await self.dispatcher.deliver_to_token(intent, token)

    def _cancel_superseded(self, event: DomainEvent) -> None:
        if event.category == NotificationCategory.EXPIRY_WARNING:
            self.retry_scheduler.cancel_for_entity(event.entity_ref, category=NotificationCategory.EXPIRY_WARNING)
        elif event.category in RESERVATION_CATEGORIES:
            self.retry_scheduler.cancel_for_entity(event.entity_ref)

    def cancel_entity(self, entity_ref: str) -> int:
        """Drop pending retries for an entity that became irrelevant.

        Called when a listing is claimed or deleted, e.g.
        ``cancel_entity("listing/42")``.
        """
        return self.retry_scheduler.cancel_for_entity(entity_ref)

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the grouping sweeper; requires a running event loop."""
        self.aggregator.start()

    async def stop(self, drain_retries: bool = False) -> None:
        """Flush open groups, then drain or cancel pending retries."""
        await self.aggregator.stop(flush=True)
        if drain_retries:
            await self.retry_scheduler.drain()
        else:
            await self.retry_scheduler.shutdown()
        if isinstance(self.gateway, HttpPushGateway):
            await self.gateway.close()
        logger.info("Pipeline stopped: %s", self.stats.to_dict())

    def get_stats(self) -> dict:
        return {
            **self.stats.to_dict(),
            "grouping": self.aggregator.get_stats(),
            "retries": self.retry_scheduler.get_stats(),
        }


def build_pipeline(
    config: Optional[DispatchConfig] = None,
    preference_store: Optional[PreferenceStore] = None,
    registry: Optional[DeviceRegistry] = None,
    geofence_index: Optional[GeofenceIndex] = None,
    gateway: Optional[PushGateway] = None,
) -> NotificationPipeline:
    """Pipeline with in-memory collaborators for anything not supplied.

    Without a gateway URL the logging gateway is used (demo mode).
    """
    config = config or DispatchConfig.from_env()
    if gateway is None:
        gateway = HttpPushGateway(config) if config.gateway_url else LoggingPushGateway()
        if not config.gateway_url:
            logger.warning("No push gateway URL configured, notifications will only be logged")

    return NotificationPipeline(
        preference_store=preference_store or InMemoryPreferenceStore(),
        registry=registry or InMemoryDeviceRegistry(config),
        geofence_index=geofence_index or InMemoryGeofenceIndex(),
        gateway=gateway,
        config=config,
    )
