"""Push gateway client and response classification."""

import logging
import time
import uuid
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from src.push_dispatch.config import DEFAULT_DISPATCH_CONFIG, DeliveryOutcome, DispatchConfig, Platform
from src.push_dispatch.exceptions import (
    DeliveryFailure,
    PermanentDeliveryFailure,
    RetryableDeliveryFailure,
)
from src.push_dispatch.models import DeliveryResult
from src.push_dispatch.payloads import PlatformPayload

logger = logging.getLogger(__name__)

# Provider reasons meaning the token itself is dead (APNs, FCM legacy and v1)
INVALID_TOKEN_REASONS = frozenset({
    "BadDeviceToken",
    "Unregistered",
    "DeviceTokenNotForTopic",
    "ExpiredToken",
    "NotRegistered",
    "InvalidRegistration",
    "UNREGISTERED",
    "invalid_token",
})

RETRYABLE_STATUS_CODES = frozenset({408, 429})


def classify_response(status_code: int, reason: str = "") -> DeliveryOutcome:
    """Map a gateway status code and provider reason to an outcome."""
    if 200 <= status_code < 300:
        return DeliveryOutcome.SUCCESS
    if status_code == 410 or reason in INVALID_TOKEN_REASONS:
        return DeliveryOutcome.PERMANENT
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return DeliveryOutcome.RETRYABLE
    return DeliveryOutcome.REJECTED


@runtime_checkable
class PushGateway(Protocol):
    """Delivers one payload to one device token."""

    async def deliver(self, token: str, platform: Platform, payload: PlatformPayload) -> DeliveryResult:
        ...


class HttpPushGateway:
    """HTTP client for the push relay that fronts APNs / FCM / Web Push.

    Example:
        gateway = HttpPushGateway(DispatchConfig(gateway_url="https://push.internal"))
        result = await gateway.deliver(token, Platform.IOS, payload)
        await gateway.close()
    """

    def __init__(
        self,
        config: Optional[DispatchConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or DEFAULT_DISPATCH_CONFIG
        self._owns_client = client is None
        headers = {}
        if self.config.gateway_api_key:
            headers["Authorization"] = f"Bearer {self.config.gateway_api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=self.config.gateway_url,
            headers=headers,
            timeout=self.config.gateway_timeout_seconds,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self, token: str, platform: Platform, payload: PlatformPayload) -> str:
        """Submit a payload; returns the provider message ID.

        Raises:
            RetryableDeliveryFailure: timeout, transport error, 429 or 5xx.
            PermanentDeliveryFailure: the token is invalid or unregistered.
            DeliveryFailure: any other rejection.
        """
        body = {"token": token, "platform": platform.value, "message": payload.to_dict()}
        try:
            resp = await self._client.post("/v1/push", json=body)
        except httpx.TimeoutException as e:
            raise RetryableDeliveryFailure(f"Gateway timeout: {e}") from e
        except httpx.TransportError as e:
            raise RetryableDeliveryFailure(f"Gateway transport error: {e}") from e

        reason = self._extract_reason(resp)
        outcome = classify_response(resp.status_code, reason)

        if outcome == DeliveryOutcome.SUCCESS:
            message_id = self._extract_message_id(resp)
            return message_id or f"msg_{uuid.uuid4().hex[:12]}"

        message = f"Gateway returned {resp.status_code}" + (f": {reason}" if reason else "")
        if outcome == DeliveryOutcome.PERMANENT:
            raise PermanentDeliveryFailure(message, status_code=resp.status_code, reason=reason)
        if outcome == DeliveryOutcome.RETRYABLE:
            raise RetryableDeliveryFailure(message, status_code=resp.status_code, reason=reason)
        raise DeliveryFailure(message, status_code=resp.status_code, reason=reason)

    async def deliver(self, token: str, platform: Platform, payload: PlatformPayload) -> DeliveryResult:
        start_time = time.perf_counter()
        try:
            message_id = await self.send(token, platform, payload)
        except PermanentDeliveryFailure as e:
            return self._failure(DeliveryOutcome.PERMANENT, e, start_time)
        except RetryableDeliveryFailure as e:
            return self._failure(DeliveryOutcome.RETRYABLE, e, start_time)
        except DeliveryFailure as e:
            return self._failure(DeliveryOutcome.REJECTED, e, start_time)

        return DeliveryResult(
            outcome=DeliveryOutcome.SUCCESS,
            status_code=200,
            message_id=message_id,
            latency_ms=int((time.perf_counter() - start_time) * 1000),
        )

    @staticmethod
    def _failure(outcome: DeliveryOutcome, error: DeliveryFailure, start_time: float) -> DeliveryResult:
        return DeliveryResult(
            outcome=outcome,
            status_code=error.status_code,
            error=error.message,
            latency_ms=int((time.perf_counter() - start_time) * 1000),
        )

    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _extract_reason(self, resp: httpx.Response) -> str:
        data = self._json(resp)
        reason = data.get("reason") or data.get("error") or ""
        if isinstance(reason, dict):
            reason = reason.get("status") or reason.get("message") or ""
        return str(reason)

    def _extract_message_id(self, resp: httpx.Response) -> Optional[str]:
        data = self._json(resp)
        message_id = data.get("message_id") or data.get("name")
        return str(message_id) if message_id else None


class LoggingPushGateway:
    """Demo gateway used when no relay URL is configured; logs and succeeds."""

    async def deliver(self, token: str, platform: Platform, payload: PlatformPayload) -> DeliveryResult:
        logger.info(f"[PUSH:{platform.value}] {payload.title}: {payload.body}")
        return DeliveryResult(
            outcome=DeliveryOutcome.SUCCESS,
            status_code=200,
            message_id=f"demo_{uuid.uuid4().hex[:12]}",
            latency_ms=0,
        )
