"""Pytest configuration and shared fixtures."""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.push_dispatch.config import DeliveryOutcome, Platform  # noqa: E402
from src.push_dispatch.models import DeliveryResult  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingSleep:
    """Sleep replacement that records requested delays and returns at once."""

    def __init__(self, clock: FakeClock = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


class BlockingSleep:
    """Sleep replacement that blocks until released, like a long timer."""

    def __init__(self):
        self.delays: list[float] = []
        self._release = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self._release.wait()

    def release(self) -> None:
        self._release.set()


class FakeGateway:
    """Push gateway returning scripted outcomes per token (default success)."""

    def __init__(self, outcomes: dict = None, default: DeliveryOutcome = DeliveryOutcome.SUCCESS):
        self.outcomes = outcomes or {}
        self.default = default
        self.calls: list[tuple[str, Platform, object]] = []

    async def deliver(self, token: str, platform: Platform, payload) -> DeliveryResult:
        self.calls.append((token, platform, payload))
        outcome = self.outcomes.get(token, self.default)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        status = {
            DeliveryOutcome.SUCCESS: 200,
            DeliveryOutcome.RETRYABLE: 503,
            DeliveryOutcome.PERMANENT: 410,
            DeliveryOutcome.REJECTED: 400,
        }[outcome]
        return DeliveryResult(outcome=outcome, status_code=status, error="" if status == 200 else "scripted")

    def tokens_called(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def clock():
    # 2026-03-02 12:00 UTC
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
