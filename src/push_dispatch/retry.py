"""Retry scheduler for transient delivery failures.

Every failed-but-retryable (intent, token) delivery becomes an asyncio task
in an arena keyed by attempt ID. The task waits on a cancellable timer,
re-checks that the token is still registered, and re-delivers. The first
dispatch counts as attempt 1; after ``DispatchConfig.max_attempts`` failed
gateway calls the attempt is dropped and logged, never pruned.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from src.push_dispatch.config import (
    AttemptState,
    DEFAULT_DISPATCH_CONFIG,
    DeliveryOutcome,
    DispatchConfig,
    NotificationCategory,
)
from src.push_dispatch.devices import DeviceRegistry
from src.push_dispatch.models import DeliveryAttempt, DeliveryResult, DeviceToken, DispatchStats, NotificationIntent

logger = logging.getLogger(__name__)

DeliverFn = Callable[[NotificationIntent, DeviceToken], Awaitable[DeliveryResult]]
SleepFn = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryScheduler:
    """Arena of pending retries with bounded backoff and entity cancellation."""

    def __init__(
        self,
        registry: DeviceRegistry,
        deliver: DeliverFn,
        config: Optional[DispatchConfig] = None,
        stats: Optional[DispatchStats] = None,
        sleep: Optional[SleepFn] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.deliver = deliver
        self.config = config or DEFAULT_DISPATCH_CONFIG
        self.stats = stats if stats is not None else DispatchStats()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or _utcnow
        self._attempts: dict[str, DeliveryAttempt] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._by_entity: dict[str, set[str]] = defaultdict(set)
        self._finished: dict[str, int] = defaultdict(int)

    def delay_for(self, attempt_count: int) -> float:
        """Backoff after failed attempt number ``attempt_count`` (1-based)."""
        delays = self.config.retry_delays_seconds
        return delays[min(attempt_count, len(delays)) - 1]

    def schedule(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        """Take ownership of a failed attempt and start its retry timer."""
        if attempt.attempt_count >= self.config.max_attempts:
            self._drop(attempt)
            return attempt

        attempt.state = AttemptState.RETRY_SCHEDULED
        self._attempts[attempt.attempt_id] = attempt
        self._by_entity[attempt.intent.entity_ref].add(attempt.attempt_id)
        task = asyncio.create_task(self._run(attempt))
        self._tasks[attempt.attempt_id] = task
        task.add_done_callback(lambda _t, attempt_id=attempt.attempt_id: self._forget(attempt_id))
        return attempt

    async def _run(self, attempt: DeliveryAttempt) -> None:
        intent = attempt.intent
        while True:
            delay = self.delay_for(attempt.attempt_count)
            attempt.state = AttemptState.RETRY_SCHEDULED
            attempt.next_retry_at = self._clock() + timedelta(seconds=delay)
            self.stats.retried += 1
            logger.info(
                "Retry %d/%d for %s intent %s in %.0fs",
                attempt.attempt_count,
                self.config.max_retries,
                intent.category.value,
                intent.intent_id,
                delay,
            )

            try:
                await self._sleep(delay)
            except asyncio.CancelledError:
                self._finish(attempt, AttemptState.CANCELLED)
                raise

            # Timer fired: from here on cancellation no longer applies.
            attempt.state = AttemptState.PENDING
            attempt.attempt_count += 1
            attempt.next_retry_at = None

            result = await self._attempt_delivery(attempt)
            if result is None:
                self._finish(attempt, AttemptState.CANCELLED)
                return

            if result.outcome == DeliveryOutcome.SUCCESS:
                self.stats.delivered += 1
                self._finish(attempt, AttemptState.SUCCESS)
                return

            if result.outcome == DeliveryOutcome.PERMANENT:
                if await self.registry.prune_token(attempt.token.token):
                    self.stats.pruned += 1
                self._finish(attempt, AttemptState.PERMANENT_FAILURE)
                return

            attempt.last_error = result.error
            if result.outcome == DeliveryOutcome.REJECTED:
                self.stats.rejected += 1
                logger.warning("Retry for intent %s rejected by gateway: %s", intent.intent_id, result.error)
                self._finish(attempt, AttemptState.DROPPED)
                return

            if attempt.attempt_count >= self.config.max_attempts:
                self._drop(attempt)
                return

    def _drop(self, attempt: DeliveryAttempt) -> None:
        intent = attempt.intent
        self.stats.record_dropped(intent.category)
        logger.error(
            "Dropping %s intent %s for %s after %d attempts: %s",
            intent.category.value,
            intent.intent_id,
            intent.recipient_id,
            attempt.attempt_count,
            attempt.last_error,
        )
        self._finish(attempt, AttemptState.DROPPED)

    async def _attempt_delivery(self, attempt: DeliveryAttempt) -> Optional[DeliveryResult]:
        """Deliver if the token is still active; None if it was pruned meanwhile."""
        try:
            tokens = await self.registry.get_active_tokens(attempt.intent.recipient_id)
        except Exception as e:
            logger.warning("Token lookup failed before retry %s: %s", attempt.attempt_id, e)
            return DeliveryResult(outcome=DeliveryOutcome.RETRYABLE, error=str(e))

        current = next((t for t in tokens if t.token == attempt.token.token), None)
        if current is None:
            logger.info("Skipping retry %s: token no longer registered", attempt.attempt_id)
            return None
        return await self.deliver(attempt.intent, current)

    def _finish(self, attempt: DeliveryAttempt, state: AttemptState) -> None:
        if not attempt.is_terminal:
            attempt.state = state
            self._finished[state.value] += 1

    def _forget(self, attempt_id: str) -> None:
        self._tasks.pop(attempt_id, None)
        attempt = self._attempts.pop(attempt_id, None)
        if attempt is None:
            return
        ids = self._by_entity.get(attempt.intent.entity_ref)
        if ids is not None:
            ids.discard(attempt_id)
            if not ids:
                del self._by_entity[attempt.intent.entity_ref]

    def cancel_for_entity(
        self,
        entity_ref: str,
        category: Optional[NotificationCategory] = None,
    ) -> int:
        """Cancel retries still waiting on their timer for an entity.

        Advisory: an attempt whose timer already fired is left to finish.
        Returns the number of attempts cancelled.
        """
        cancelled = 0
        for attempt_id in list(self._by_entity.get(entity_ref, ())):
            attempt = self._attempts.get(attempt_id)
            task = self._tasks.get(attempt_id)
            if attempt is None or task is None:
                continue
            if category is not None and attempt.intent.category != category:
                continue
            if attempt.state != AttemptState.RETRY_SCHEDULED:
                continue
            self._finish(attempt, AttemptState.CANCELLED)
            task.cancel()
            cancelled += 1

        if cancelled:
            logger.info("Cancelled %d pending retries for %s", cancelled, entity_ref)
        return cancelled

    async def drain(self) -> None:
        """Wait until every pending retry reaches a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> int:
        """Cancel all pending retries; in-flight work is lost."""
        tasks = list(self._tasks.items())
        for attempt_id, task in tasks:
            attempt = self._attempts.get(attempt_id)
            if attempt is not None:
                self._finish(attempt, AttemptState.CANCELLED)
            task.cancel()
        if tasks:
            await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)
            logger.info("Retry scheduler shut down, %d pending retries cancelled", len(tasks))
        return len(tasks)

    def get_pending(self, entity_ref: Optional[str] = None) -> list[DeliveryAttempt]:
        if entity_ref is not None:
            return [self._attempts[a] for a in self._by_entity.get(entity_ref, ()) if a in self._attempts]
        return list(self._attempts.values())

    def get_stats(self) -> dict:
        return {
            "pending": len(self._attempts),
            "scheduled": sum(1 for a in self._attempts.values() if a.state == AttemptState.RETRY_SCHEDULED),
            "finished": dict(self._finished),
        }
