"""Device token registry."""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable

from src.push_dispatch.config import DEFAULT_DISPATCH_CONFIG, DispatchConfig, Platform
from src.push_dispatch.models import DeviceToken

logger = logging.getLogger(__name__)


@runtime_checkable
class DeviceRegistry(Protocol):
    """Token lookups and pruning used by the pipeline.

    Registration belongs to the client-facing endpoint, not to this service.
    """

    async def get_active_tokens(self, user_id: str) -> list[DeviceToken]:
        ...

    async def prune_token(self, token: str) -> bool:
        """Remove a token. Pruning an unknown token is a no-op returning False."""
        ...

    async def confirm_token(self, token: str) -> None:
        ...


class InMemoryDeviceRegistry:
    """Token table keyed by token value, with a per-user index.

    Every mutation is a single-token operation under one lock, mirroring
    row-level atomicity of the backing store.
    """

    def __init__(self, config: Optional[DispatchConfig] = None):
        self.config = config or DEFAULT_DISPATCH_CONFIG
        self._lock = threading.Lock()
        self._tokens: dict[str, DeviceToken] = {}
        self._user_tokens: dict[str, set[str]] = defaultdict(set)

    def register_token(self, user_id: str, token: str, platform: Platform) -> DeviceToken:
        """Register a token, moving ownership if another user held it."""
        with self._lock:
            existing = self._tokens.get(token)
            if existing:
                if existing.user_id != user_id:
                    self._user_tokens[existing.user_id].discard(token)
                    logger.info("Token re-registered from user %s to %s", existing.user_id, user_id)
                existing.user_id = user_id
                existing.platform = platform
                existing.registered_at = datetime.now(timezone.utc)
                self._user_tokens[user_id].add(token)
                return existing

            device_token = DeviceToken(token=token, user_id=user_id, platform=platform)
            self._tokens[token] = device_token
            self._user_tokens[user_id].add(token)
            return device_token

    def unregister_token(self, token: str) -> bool:
        with self._lock:
            return self._remove(token)

    def _remove(self, token: str) -> bool:
        device_token = self._tokens.pop(token, None)
        if device_token is None:
            return False
        user_tokens = self._user_tokens.get(device_token.user_id)
        if user_tokens is not None:
            user_tokens.discard(token)
            if not user_tokens:
                del self._user_tokens[device_token.user_id]
        return True

    def get_token(self, token: str) -> Optional[DeviceToken]:
        with self._lock:
            return self._tokens.get(token)

    async def get_active_tokens(self, user_id: str) -> list[DeviceToken]:
        with self._lock:
            return [self._tokens[t] for t in sorted(self._user_tokens.get(user_id, ())) if t in self._tokens]

    async def prune_token(self, token: str) -> bool:
        with self._lock:
            removed = self._remove(token)
        if removed:
            logger.info("Pruned invalid token %s...", token[:8])
        return removed

    async def confirm_token(self, token: str) -> None:
        with self._lock:
            device_token = self._tokens.get(token)
            if device_token:
                device_token.mark_confirmed()

    def get_stale_tokens(self, days: Optional[int] = None) -> list[DeviceToken]:
        """Tokens neither registered nor confirmed within the last N days."""
        days = days if days is not None else self.config.stale_token_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self._lock:
            return [t for t in self._tokens.values() if t.last_seen_at < cutoff]

    def cleanup_stale_tokens(self, days: Optional[int] = None) -> int:
        stale = self.get_stale_tokens(days)
        count = 0
        with self._lock:
            for device_token in stale:
                if self._remove(device_token.token):
                    count += 1
        if count:
            logger.info("Removed %d stale tokens", count)
        return count

    def get_token_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id:
                return len(self._user_tokens.get(user_id, ()))
            return len(self._tokens)

    def get_platform_breakdown(self) -> dict[str, int]:
        breakdown: dict[str, int] = {}
        with self._lock:
            for device_token in self._tokens.values():
                key = device_token.platform.value
                breakdown[key] = breakdown.get(key, 0) + 1
        return breakdown

    def get_stats(self) -> dict:
        with self._lock:
            total = len(self._tokens)
            users = len(self._user_tokens)
        return {
            "total_tokens": total,
            "unique_users": users,
            "by_platform": self.get_platform_breakdown(),
        }
