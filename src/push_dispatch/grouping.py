"""Grouping aggregator: collapses bursts of same-category notifications.

Buckets are keyed by (recipient, category). A bucket opens with its first
intent and lives for one window. Reaching the threshold releases a single
collapsed intent immediately; anything arriving later in that window is
absorbed. A window that closes below the threshold releases its intents
one by one.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from src.push_dispatch.config import (
    CATEGORY_CONFIGS,
    DEFAULT_DISPATCH_CONFIG,
    DispatchConfig,
    NotificationCategory,
    NotificationPriority,
)
from src.push_dispatch.eligibility import DEEP_LINK_SCHEME
from src.push_dispatch.models import NotificationIntent

logger = logging.getLogger(__name__)

BucketKey = tuple[str, NotificationCategory]
ReleaseCallback = Callable[[list[NotificationIntent]], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GroupBucket:
    """Pending intents for one (recipient, category) window."""

    recipient_id: str
    category: NotificationCategory
    started_at: datetime
    intents: list[NotificationIntent] = field(default_factory=list)
    flushed: bool = False
    absorbed: int = 0

    @property
    def count(self) -> int:
        return len(self.intents) + self.absorbed


class GroupingAggregator:
    """Per-recipient, per-category burst collapsing."""

    def __init__(
        self,
        config: Optional[DispatchConfig] = None,
        on_release: Optional[ReleaseCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or DEFAULT_DISPATCH_CONFIG
        self.on_release = on_release
        self._clock = clock or _utcnow
        self._buckets: dict[BucketKey, GroupBucket] = {}
        self._locks: "weakref.WeakValueDictionary[BucketKey, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._sweeper: Optional[asyncio.Task] = None
        self._stats = {"collapsed": 0, "grouped": 0, "absorbed": 0, "released_individually": 0}

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.config.group_window_seconds)

    def should_group(self, intent: NotificationIntent) -> bool:
        """High-priority and ungrouped categories always bypass the aggregator."""
        if intent.priority == NotificationPriority.HIGH:
            return False
        return intent.category not in self.config.ungrouped_categories

    def _lock_for(self, key: BucketKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _is_expired(self, bucket: GroupBucket, now: datetime) -> bool:
        return now - bucket.started_at >= self.window

    async def add(self, intent: NotificationIntent) -> list[NotificationIntent]:
        """Offer an intent; returns intents ready to dispatch now."""
        if not self.should_group(intent):
            return [intent]

        key = (intent.recipient_id, intent.category)
        lock = self._lock_for(key)
        async with lock:
            now = self._clock()
            ready: list[NotificationIntent] = []

            bucket = self._buckets.get(key)
            if bucket is not None and self._is_expired(bucket, now):
                ready.extend(self._close(key, bucket))
                bucket = None

            if bucket is None:
                bucket = GroupBucket(recipient_id=intent.recipient_id, category=intent.category, started_at=now)
                self._buckets[key] = bucket

            if bucket.flushed:
                bucket.absorbed += 1
                self._stats["absorbed"] += 1
                logger.debug(
                    "Absorbed %s intent for %s into flushed group (%d total)",
                    intent.category.value,
                    intent.recipient_id,
                    bucket.count,
                )
                return ready

            bucket.intents.append(intent)
            if len(bucket.intents) >= self.config.group_threshold:
                bucket.flushed = True
                ready.append(self._collapse(bucket))

            return ready

    async def flush_expired(self) -> int:
        """Close every bucket whose window has ended; returns intents released."""
        released = 0
        for key in list(self._buckets):
            lock = self._lock_for(key)
            async with lock:
                bucket = self._buckets.get(key)
                if bucket is None or not self._is_expired(bucket, self._clock()):
                    continue
                ready = self._close(key, bucket)
            if ready:
                released += len(ready)
                await self._release(ready)
        return released

    async def flush_all(self) -> int:
        """Close all buckets regardless of window, e.g. at shutdown."""
        released = 0
        for key in list(self._buckets):
            lock = self._lock_for(key)
            async with lock:
                bucket = self._buckets.get(key)
                if bucket is None:
                    continue
                ready = self._close(key, bucket)
            if ready:
                released += len(ready)
                await self._release(ready)
        return released

    def _close(self, key: BucketKey, bucket: GroupBucket) -> list[NotificationIntent]:
        del self._buckets[key]
        if bucket.flushed:
            if bucket.absorbed:
                logger.info(
                    "Group window closed for %s/%s: %d absorbed after flush",
                    bucket.recipient_id,
                    bucket.category.value,
                    bucket.absorbed,
                )
            return []
        self._stats["released_individually"] += len(bucket.intents)
        return list(bucket.intents)

    def _collapse(self, bucket: GroupBucket) -> NotificationIntent:
        category_config = CATEGORY_CONFIGS.get(bucket.category, {})
        count = len(bucket.intents)
        recent = list(reversed(bucket.intents[-self.config.group_display_cap:]))
        latest = bucket.intents[-1]
        route = category_config.get("route", bucket.category.value)

        title = category_config.get("grouped_title", "{count} new notifications").format(count=count)
        body = ", ".join(i.title for i in recent if i.title)
        if count > len(recent):
            body = f"{body} and {count - len(recent)} more" if body else ""

        collapsed = NotificationIntent(
            recipient_id=bucket.recipient_id,
            category=bucket.category,
            priority=latest.priority,
            title=title,
            body=body,
            entity_ref=f"group/{latest.grouping_key}",
            deep_link=f"{DEEP_LINK_SCHEME}{route}",
            collapse_id=f"group:{latest.grouping_key}:{int(bucket.started_at.timestamp())}",
            entity_ids=[i.entity_ids[0] for i in recent if i.entity_ids],
            total_count=count,
            data={"count": str(count)},
        )

        self._stats["collapsed"] += 1
        self._stats["grouped"] += count
        logger.info(
            "Collapsed %d %s intents for %s",
            count,
            bucket.category.value,
            bucket.recipient_id,
        )
        return collapsed

    async def _release(self, intents: list[NotificationIntent]) -> None:
        if self.on_release is None:
            logger.warning("Dropping %d released intents: no release callback", len(intents))
            return
        await self.on_release(intents)

    # ── Background sweeper ───────────────────────────────────────────

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self, flush: bool = True) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if flush:
            await self.flush_all()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.grouping_sweep_seconds)
            try:
                await self.flush_expired()
            except Exception:
                logger.exception("Grouping sweep failed")

    # ── Introspection ────────────────────────────────────────────────

    def get_pending_count(self) -> int:
        return sum(len(b.intents) for b in self._buckets.values() if not b.flushed)

    def get_bucket(self, recipient_id: str, category: NotificationCategory) -> Optional[GroupBucket]:
        return self._buckets.get((recipient_id, category))

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "open_buckets": len(self._buckets),
            "pending_intents": self.get_pending_count(),
        }
