"""
RolloutService: the single entry point request-handling code uses.

Bundles the Event Recorder, Metrics Aggregator, Significance Evaluator and
Rollout Controller behind one object. It is built once (in the FastAPI
lifespan or by the caller), started, and passed around explicitly; there is no
module-level instance.

Usage:
    service = build_rollout_service(settings, storage, distribution, notifier)
    await service.start()
    service.track_event(EventType.CONVERSION, 'user_42', 'onboarding', 'express')
    rollout_id = await service.start_rollout(config)
    await service.stop()
"""

import logging
from typing import Any, List, Mapping, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from flag_rollout.core.config import Settings
from flag_rollout.jobs.scheduler import create_scheduler
from flag_rollout.models import (
    ABTestResults,
    ConversionMetrics,
    DateRange,
    Event,
    EventData,
    EventType,
    RecorderStats,
    RolloutConfig,
    RolloutStatus,
)
from flag_rollout.services.event_recorder import EventRecorder
from flag_rollout.services.metrics import MetricsAggregator
from flag_rollout.services.ports import (
    DistributionPort,
    FeedbackPort,
    NotificationPort,
    StoragePort,
)
from flag_rollout.services.rollout_controller import RolloutController
from flag_rollout.services.significance import SignificanceEvaluator


logger = logging.getLogger(__name__)


class RolloutService:
    def __init__(
        self,
        recorder: EventRecorder,
        aggregator: MetricsAggregator,
        evaluator: SignificanceEvaluator,
        controller: RolloutController,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.recorder = recorder
        self.aggregator = aggregator
        self.evaluator = evaluator
        self.controller = controller
        self.scheduler = scheduler

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the flush timer, reload persisted rollouts, then start the tick timer."""
        self.recorder.start()
        await self.controller.restore()
        self.controller.start()
        logger.info("Rollout service started")

    async def stop(self) -> None:
        """Stop the tick timer first, then drain the event buffer."""
        await self.controller.stop()
        await self.recorder.stop()
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Rollout service stopped")

    # =========================================================================
    # Events
    # =========================================================================

    def track_event(
        self,
        event_type: Union[EventType, str],
        user_id: str,
        flag_key: str,
        flag_value: str,
        **context: Any,
    ) -> Event:
        return self.recorder.track_event(event_type, user_id, flag_key, flag_value, **context)

    def record_event(self, data: Union[EventData, Mapping[str, Any]]) -> Event:
        return self.recorder.record(data)

    def recorder_stats(self) -> RecorderStats:
        return self.recorder.stats()

    # =========================================================================
    # Analytics
    # =========================================================================

    async def get_metrics(
        self,
        flag_key: str,
        date_range: Optional[DateRange] = None,
    ) -> List[ConversionMetrics]:
        return await self.aggregator.compute_metrics(flag_key, date_range)

    async def analyze_test(
        self,
        flag_key: str,
        date_range: Optional[DateRange] = None,
    ) -> Optional[ABTestResults]:
        return await self.evaluator.analyze(flag_key, date_range)

    # =========================================================================
    # Rollouts
    # =========================================================================

    async def start_rollout(self, config: Union[RolloutConfig, Mapping[str, Any]]) -> str:
        return await self.controller.start_rollout(config)

    async def pause_rollout(self, rollout_id: str, reason: str) -> RolloutStatus:
        return await self.controller.pause(rollout_id, reason)

    async def resume_rollout(self, rollout_id: str, reason: str) -> RolloutStatus:
        return await self.controller.resume(rollout_id, reason)

    async def rollback(self, rollout_id: str, reason: str) -> RolloutStatus:
        return await self.controller.rollback(rollout_id, reason)

    def get_rollout_status(self, rollout_id: str) -> RolloutStatus:
        return self.controller.get_status(rollout_id)

    def list_rollouts(self) -> List[RolloutStatus]:
        return self.controller.list_statuses()


def build_rollout_service(
    settings: Settings,
    storage: StoragePort,
    distribution: DistributionPort,
    notifier: NotificationPort,
    feedback: Optional[FeedbackPort] = None,
) -> RolloutService:
    """Wire the components from settings and the given adapters."""
    scheduler = create_scheduler()
    recorder = EventRecorder(
        storage,
        batch_size=settings.event_batch_size,
        flush_interval_seconds=settings.event_flush_interval_seconds,
        max_buffer_size=settings.event_max_buffer_size,
        scheduler=scheduler,
    )
    aggregator = MetricsAggregator(storage)
    evaluator = SignificanceEvaluator(
        aggregator,
        min_total_users=settings.significance_min_total_users,
    )
    controller = RolloutController(
        storage,
        distribution,
        notifier,
        aggregator,
        feedback=feedback,
        recorder=recorder,
        tick_interval_seconds=settings.rollout_tick_interval_seconds,
        stats_window_hours=settings.rollout_stats_window_hours,
        worker_concurrency=settings.rollout_worker_concurrency,
        status_write_attempts=settings.status_write_attempts,
        feedback_score_floor=settings.feedback_score_floor,
        scheduler=scheduler,
    )
    return RolloutService(recorder, aggregator, evaluator, controller, scheduler=scheduler)
