"""Dispatcher: fans one intent out to the recipient's current device tokens."""

import asyncio
import logging
from typing import Optional

from src.push_dispatch.config import DEFAULT_DISPATCH_CONFIG, DeliveryOutcome, DispatchConfig
from src.push_dispatch.devices import DeviceRegistry
from src.push_dispatch.gateway import PushGateway
from src.push_dispatch.models import (
    DeliveryAttempt,
    DeliveryResult,
    DeviceToken,
    DispatchReport,
    DispatchStats,
    NotificationIntent,
)
from src.push_dispatch.payloads import build_payload
from src.push_dispatch.retry import RetryScheduler

logger = logging.getLogger(__name__)


class Dispatcher:
    """Builds platform payloads, calls the gateway and reacts to the outcome.

    Tokens are re-fetched from the registry for every intent so a token
    pruned after eligibility was evaluated is never used. Each token is
    handled independently: success confirms it, a permanent failure prunes
    it, a retryable failure goes to the retry scheduler.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        gateway: PushGateway,
        config: Optional[DispatchConfig] = None,
        stats: Optional[DispatchStats] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
    ):
        self.registry = registry
        self.gateway = gateway
        self.config = config or DEFAULT_DISPATCH_CONFIG
        self.stats = stats if stats is not None else DispatchStats()
        self.retry_scheduler = retry_scheduler or RetryScheduler(
            registry,
            self.deliver_to_token,
            config=self.config,
            stats=self.stats,
        )

    async def dispatch(self, intent: NotificationIntent) -> DispatchReport:
        """Deliver an intent to every active token of its recipient."""
        report = DispatchReport(intent_id=intent.intent_id)
        tokens = await self.registry.get_active_tokens(intent.recipient_id)
        self.stats.dispatched += 1

        if not tokens:
            logger.info("No active tokens for %s at dispatch time", intent.recipient_id)
            return report

        outcomes = await asyncio.gather(
            *(self._dispatch_token(intent, token, report) for token in tokens),
            return_exceptions=True,
        )
        for token, outcome in zip(tokens, outcomes):
            if isinstance(outcome, Exception):
                self.stats.errors += 1
                logger.error(
                    "Delivery handling failed for %s token %s...: %s",
                    token.platform.value,
                    token.token[:8],
                    outcome,
                )

        logger.info(
            "Dispatched %s intent %s to %d tokens (delivered=%s, pruned=%d, retrying=%d)",
            intent.category.value,
            intent.intent_id,
            report.attempted,
            report.delivered,
            report.pruned,
            report.retrying,
        )
        return report

    async def deliver_to_token(self, intent: NotificationIntent, token: DeviceToken) -> DeliveryResult:
        """One gateway call for one (intent, token) pair; never raises."""
        try:
            payload = build_payload(intent, token.platform, self.config)
        except ValueError as e:
            return DeliveryResult(outcome=DeliveryOutcome.REJECTED, error=str(e))

        try:
            result = await asyncio.wait_for(
                self.gateway.deliver(token.token, token.platform, payload),
                timeout=self.config.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return DeliveryResult(
                outcome=DeliveryOutcome.RETRYABLE,
                error=f"Gateway call timed out after {self.config.gateway_timeout_seconds}s",
            )
        except Exception as e:
            logger.exception("Gateway call raised for token %s...", token.token[:8])
            return DeliveryResult(outcome=DeliveryOutcome.RETRYABLE, error=str(e))

        if result.success:
            await self.registry.confirm_token(token.token)
        return result

    async def _dispatch_token(
        self,
        intent: NotificationIntent,
        token: DeviceToken,
        report: DispatchReport,
    ) -> None:
        result = await self.deliver_to_token(intent, token)
        report.results[token.token] = result

        if result.outcome == DeliveryOutcome.SUCCESS:
            self.stats.delivered += 1

        elif result.outcome == DeliveryOutcome.PERMANENT:
            if await self.registry.prune_token(token.token):
                self.stats.pruned += 1
            report.pruned += 1

        elif result.outcome == DeliveryOutcome.RETRYABLE:
            attempt = self.retry_scheduler.schedule(
                DeliveryAttempt(intent=intent, token=token, attempt_count=1, last_error=result.error)
            )
            if not attempt.is_terminal:
                report.retrying += 1

        else:
            self.stats.rejected += 1
            logger.warning(
                "Gateway rejected %s payload for token %s...: %s",
                intent.category.value,
                token.token[:8],
                result.error,
            )
