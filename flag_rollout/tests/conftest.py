"""
Pytest Configuration and Shared Fixtures for Flag Rollout Tests.

Provides:
- In-memory fakes for the storage, distribution, notification and feedback ports
- A fake metrics aggregator that returns preset per-variant metrics
- A controllable clock for schedule-driven controller tests
- A mocked asyncpg pool for adapter tests
- Factories for events and rollout configs

Dependencies:
- pytest
- pytest-asyncio
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock, Mock

import pytest

from flag_rollout.models import (
    ConversionMetrics,
    DateRange,
    Event,
    EventType,
    FeedbackSignal,
    RolloutConfig,
    RolloutStatus,
    to_epoch_millis,
)
from flag_rollout.services.event_recorder import EventRecorder, complete_event
from flag_rollout.services.metrics import MetricsAggregator
from flag_rollout.services.ports import (
    DistributionPort,
    FeedbackPort,
    NotificationPort,
    StoragePort,
)
from flag_rollout.services.rollout_controller import RolloutController


FLAG_KEY = "patient-onboarding-variant"
TARGET_VARIANT = "express"
START_TIME = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


# ============================================================
# PYTEST HOOKS
# ============================================================

def pytest_configure(config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        'markers',
        'slow: marks tests as slow (deselect with -m "not slow")'
    )


# ============================================================
# PORT FAKES
# ============================================================

class InMemoryStorage(StoragePort):
    """
    StoragePort keeping everything in lists and dicts.

    `append_failures` / `status_write_failures` make the next N calls raise.
    `fail_status_writes` makes every status write raise until reset.
    """

    def __init__(self) -> None:
        self.events: List[Event] = []
        self.configs: Dict[str, RolloutConfig] = {}
        self.statuses: Dict[str, RolloutStatus] = {}
        self.append_calls: List[List[Event]] = []
        self.status_writes: List[RolloutStatus] = []
        self.append_failures = 0
        self.status_write_failures = 0
        self.fail_status_writes = False

    async def append_events(self, events: Sequence[Event]) -> None:
        self.append_calls.append(list(events))
        if self.append_failures > 0:
            self.append_failures -= 1
            raise ConnectionError("database unavailable")
        self.events.extend(events)

    async def query_events(self, flag_key: str, date_range: DateRange) -> List[Event]:
        matching = [
            e for e in self.events
            if e.flag_key == flag_key
            and date_range.start_millis <= e.timestamp <= date_range.end_millis
        ]
        return sorted(matching, key=lambda e: e.timestamp)

    async def save_rollout_config(self, rollout_id: str, config: RolloutConfig) -> None:
        self.configs[rollout_id] = config

    async def save_rollout_status(self, rollout_id: str, status: RolloutStatus) -> None:
        if self.fail_status_writes or self.status_write_failures > 0:
            self.status_write_failures = max(0, self.status_write_failures - 1)
            raise ConnectionError("database unavailable")
        self.statuses[rollout_id] = status.model_copy(deep=True)
        self.status_writes.append(status.model_copy(deep=True))

    async def load_rollouts(self) -> List[Tuple[RolloutConfig, RolloutStatus]]:
        return [
            (self.configs[rollout_id], status.model_copy(deep=True))
            for rollout_id, status in self.statuses.items()
        ]


class RecordingDistribution(DistributionPort):
    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, float]] = []
        self.current: Dict[Tuple[str, str], float] = {}
        self.failures = 0

    async def set_variant_percentage(self, flag_key: str, variant: str, percentage: float) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("flag service unavailable")
        self.calls.append((flag_key, variant, percentage))
        self.current[(flag_key, variant)] = percentage


class RecordingNotifier(NotificationPort):
    def __init__(self) -> None:
        self.alerts: List[str] = []
        self.completions: List[str] = []

    async def send_alert(self, message: str) -> None:
        self.alerts.append(message)

    async def send_completion(self, message: str) -> None:
        self.completions.append(message)


class StaticFeedback(FeedbackPort):
    def __init__(self, signal: Optional[FeedbackSignal] = None) -> None:
        self.signal = signal

    async def get_feedback(self, flag_key: str, variant: str) -> Optional[FeedbackSignal]:
        return self.signal


class PresetMetricsAggregator(MetricsAggregator):
    """Returns metrics set with `set_metrics` instead of reading events."""

    def __init__(self) -> None:
        super().__init__(storage=InMemoryStorage())
        self.metrics: Dict[str, List[ConversionMetrics]] = {}
        self.failing_flags: set = set()

    def set_metrics(
        self,
        total_users: int,
        conversion_rate: float,
        error_rate: float = 0.0,
        flag_key: str = FLAG_KEY,
        variant: str = TARGET_VARIANT,
    ) -> None:
        metrics = ConversionMetrics(
            flag_key=flag_key,
            variant=variant,
            total_users=total_users,
            conversions=round(total_users * conversion_rate),
            conversion_rate=conversion_rate,
            error_users=round(total_users * error_rate),
            error_rate=error_rate,
        )
        others = [m for m in self.metrics.get(flag_key, []) if m.variant != variant]
        self.metrics[flag_key] = others + [metrics]

    async def compute_metrics(self, flag_key: str, date_range: Optional[DateRange] = None) -> List[ConversionMetrics]:
        if flag_key in self.failing_flags:
            raise ConnectionError("metrics query failed")
        return list(self.metrics.get(flag_key, []))


class FakeClock:
    def __init__(self, now: datetime = START_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float) -> datetime:
        self.now = self.now + timedelta(hours=hours)
        return self.now


# ============================================================
# PORT FIXTURES
# ============================================================

@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def distribution() -> RecordingDistribution:
    return RecordingDistribution()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def feedback() -> StaticFeedback:
    return StaticFeedback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def preset_aggregator() -> PresetMetricsAggregator:
    return PresetMetricsAggregator()


# ============================================================
# SERVICE FIXTURES
# ============================================================

@pytest.fixture
def recorder(storage: InMemoryStorage) -> EventRecorder:
    """Recorder with a long flush interval so tests flush explicitly."""
    return EventRecorder(storage, batch_size=10, flush_interval_seconds=60.0, max_buffer_size=100)


@pytest.fixture
def controller(
    storage: InMemoryStorage,
    distribution: RecordingDistribution,
    notifier: RecordingNotifier,
    preset_aggregator: PresetMetricsAggregator,
    feedback: StaticFeedback,
    recorder: EventRecorder,
    clock: FakeClock,
) -> RolloutController:
    """Controller driven by preset metrics and the fake clock."""
    return RolloutController(
        storage,
        distribution,
        notifier,
        preset_aggregator,
        feedback=feedback,
        recorder=recorder,
        status_write_attempts=3,
        clock=clock,
    )


# ============================================================
# DATA FACTORIES
# ============================================================

@pytest.fixture
def rollout_config_data() -> Dict[str, Any]:
    """
    Baseline rollout config: 5% -> 100% in steps of 10 every 24 h,
    50 users minimum, 5% error ceiling, 20% conversion floor.
    """
    return {
        "flag_key": FLAG_KEY,
        "target_variant": TARGET_VARIANT,
        "initial_percentage": 5,
        "target_percentage": 100,
        "increment_percentage": 10,
        "increment_interval_hours": 24,
        "min_sample_size": 50,
        "max_error_rate": 0.05,
        "min_conversion_rate": 0.2,
        "emergency_stop": {
            "max_error_rate_spike": 0.2,
            "min_conversion_rate_drop": 0.05,
            "max_user_complaints": 10,
        },
        "created_by": "ops@example.com",
        "reason": "Express onboarding rollout",
        "start_date": START_TIME.isoformat(),
    }


@pytest.fixture
def make_config(rollout_config_data: Dict[str, Any]) -> Callable[..., RolloutConfig]:
    def _make(**overrides: Any) -> RolloutConfig:
        return RolloutConfig.model_validate({**rollout_config_data, **overrides})
    return _make


@pytest.fixture
def make_events() -> Callable[..., List[Event]]:
    """
    Build events for one variant: `users` distinct users each with a
    flag_assignment, the first `converted` of them with a conversion and the
    first `errored` with an error event.
    """
    def _make(
        variant: str,
        users: int,
        converted: int = 0,
        errored: int = 0,
        flag_key: str = FLAG_KEY,
        at: Optional[datetime] = None,
        conversion_duration: Optional[float] = None,
    ) -> List[Event]:
        timestamp = to_epoch_millis(at or START_TIME)
        events: List[Event] = []
        for i in range(users):
            user_id = f"{variant}_user_{i}"
            events.append(complete_event({
                "event_type": EventType.FLAG_ASSIGNMENT,
                "user_id": user_id,
                "flag_key": flag_key,
                "flag_value": variant,
                "timestamp": timestamp,
            }))
            if i < converted:
                events.append(complete_event({
                    "event_type": EventType.CONVERSION,
                    "user_id": user_id,
                    "flag_key": flag_key,
                    "flag_value": variant,
                    "timestamp": timestamp,
                    "duration": conversion_duration,
                }))
            if i < errored:
                events.append(complete_event({
                    "event_type": EventType.ERROR,
                    "user_id": user_id,
                    "flag_key": flag_key,
                    "flag_value": variant,
                    "timestamp": timestamp,
                    "error_message": "boom",
                }))
        return events
    return _make


# ============================================================
# DATABASE MOCK FIXTURES
# ============================================================

@pytest.fixture
def mock_db_pool() -> AsyncMock:
    """
    Mock asyncpg pool whose `acquire()` yields a mocked connection with
    execute / executemany / fetch / fetchrow / fetchval.

    Usage:
        conn = mock_db_pool.acquire.return_value.__aenter__.return_value
        conn.fetch.return_value = [{'id': 1}]
    """
    pool = AsyncMock()

    conn = AsyncMock()
    conn.execute = AsyncMock(return_value=None)
    conn.executemany = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)

    acquire_context = AsyncMock()
    acquire_context.__aenter__ = AsyncMock(return_value=conn)
    acquire_context.__aexit__ = AsyncMock(return_value=None)
    pool.acquire = Mock(return_value=acquire_context)

    pool.close = AsyncMock(return_value=None)
    return pool
