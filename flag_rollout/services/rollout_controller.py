"""
Rollout Controller: the gradual-rollout state machine.

Each rollout widens one variant's exposure from `initial_percentage` to
`target_percentage` in steps of `increment_percentage`, at most once per
`increment_interval_hours`, and only while its metrics stay healthy.

States and transitions:

    active  -> paused       pause(reason)
    paused  -> active       resume(reason)
    failed  -> active       resume(reason), after storage recovers
    active  -> active       scheduled increment (gates below)
    active  -> completed    current_percentage reached target
    active  -> rolled_back  emergency stop on a tick
    active | paused | failed -> rolled_back   rollback(reason)
    non-terminal -> failed  status write failed `status_write_attempts` times in a row

`completed` and `rolled_back` are terminal.

Tick (for each active rollout, under its own lock):
1. Refresh `current_stats` for the target variant over the trailing stats window.
2. Emergency stop: error rate above `max_error_rate_spike`, conversion rate
   below `min_conversion_rate_drop`, feedback score below the floor, or
   complaints above `max_user_complaints`. Rolls back and alerts.
3. Increment when the schedule is due and the sample size, error rate and
   conversion rate gates pass.
4. Complete once the target percentage is reached.

Ordering on writes:
- increment and completion persist the status first and only then touch the
  distribution; a failed write leaves the rollout unchanged until the next tick
- rollback sets the distribution to 0 before any write and stays rolled back
  even when the write fails
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError

from flag_rollout.jobs.scheduler import PeriodicJob
from flag_rollout.models import (
    DateRange,
    EventType,
    FeedbackSignal,
    IncrementRecord,
    RolloutConfig,
    RolloutState,
    RolloutStats,
    RolloutStatus,
    ScheduledIncrement,
    as_utc,
    to_epoch_millis,
    utc_now,
)
from flag_rollout.services.event_recorder import EventRecorder
from flag_rollout.services.metrics import SYSTEM_USER_ID, MetricsAggregator
from flag_rollout.services.ports import (
    DistributionPort,
    FeedbackPort,
    NoFeedback,
    NotificationPort,
    StoragePort,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

FEEDBACK_SCORE_FLOOR: float = 2.0
DEFAULT_TICK_INTERVAL_SECONDS: float = 3600.0
DEFAULT_STATS_WINDOW_HOURS: float = 24.0
DEFAULT_WORKER_CONCURRENCY: int = 4
DEFAULT_STATUS_WRITE_ATTEMPTS: int = 3

REASON_INITIAL = "Initial rollout start"
REASON_INCREMENT = "Scheduled increment"
REASON_COMPLETED = "Rollout completed successfully"


# =============================================================================
# Errors
# =============================================================================


class RolloutError(Exception):
    """Base class for rollout controller errors."""


class RolloutConfigError(RolloutError):
    """The rollout configuration violates an invariant; the rollout never starts."""


class RolloutNotFoundError(RolloutError):
    def __init__(self, rollout_id: str) -> None:
        super().__init__(f"Rollout {rollout_id} not found")
        self.rollout_id = rollout_id


class RolloutStateError(RolloutError):
    """The requested transition is not allowed from the rollout's current state."""


class RolloutPersistenceError(RolloutError):
    """An operator transition could not be persisted."""


# =============================================================================
# Pure rules
# =============================================================================


def validate_rollout_config(config: Union[RolloutConfig, Mapping[str, Any]]) -> RolloutConfig:
    """
    Check a rollout configuration before it is used.

    Accepts a RolloutConfig or a plain mapping. Invariants are re-checked
    explicitly so configs built with `model_construct` cannot slip through.

    Raises:
        RolloutConfigError: If any invariant is violated.
    """
    if not isinstance(config, RolloutConfig):
        try:
            config = RolloutConfig.model_validate(config)
        except ValidationError as e:
            raise RolloutConfigError(f"Invalid rollout config: {e}") from e

    problems: List[str] = []
    if not 0 <= config.initial_percentage <= config.target_percentage <= 100:
        problems.append(
            f"percentages must satisfy 0 <= initial ({config.initial_percentage}) "
            f"<= target ({config.target_percentage}) <= 100"
        )
    if not 0 < config.increment_percentage <= 50:
        problems.append(f"increment_percentage must be in (0, 50], got {config.increment_percentage}")
    if config.increment_interval_hours < 1:
        problems.append(f"increment_interval_hours must be >= 1, got {config.increment_interval_hours}")
    if config.end_date is not None and as_utc(config.end_date) < as_utc(config.start_date):
        problems.append("end_date must not be before start_date")

    if problems:
        raise RolloutConfigError("Invalid rollout config: " + "; ".join(problems))
    return config


def calculate_next_increment(
    current_percentage: float,
    config: RolloutConfig,
    now: datetime,
) -> Optional[ScheduledIncrement]:
    """Next scheduled step, or None when the target is already reached."""
    if current_percentage >= config.target_percentage:
        return None
    return ScheduledIncrement(
        scheduled_at=now + timedelta(hours=config.increment_interval_hours),
        to_percentage=min(current_percentage + config.increment_percentage, config.target_percentage),
    )


def find_emergency_stop_reason(
    stats: RolloutStats,
    config: RolloutConfig,
    feedback_score_floor: float = FEEDBACK_SCORE_FLOOR,
) -> Optional[str]:
    """
    Return why the rollout must be stopped, or None when it is healthy.

    The conversion floor only applies once the variant has users; feedback and
    complaint checks only apply when a feedback source reported them.
    """
    stop = config.emergency_stop

    if stats.error_rate > stop.max_error_rate_spike:
        return (
            f"error rate {stats.error_rate:.2%} exceeded "
            f"emergency threshold {stop.max_error_rate_spike:.2%}"
        )
    if stats.total_users > 0 and stats.conversion_rate < stop.min_conversion_rate_drop:
        return (
            f"conversion rate {stats.conversion_rate:.2%} fell below "
            f"emergency threshold {stop.min_conversion_rate_drop:.2%}"
        )
    if stats.user_feedback_score is not None and stats.user_feedback_score < feedback_score_floor:
        return (
            f"user feedback score {stats.user_feedback_score:.1f} fell below "
            f"{feedback_score_floor:.1f}"
        )
    if stats.user_complaints is not None and stats.user_complaints > stop.max_user_complaints:
        return (
            f"{stats.user_complaints} user complaints exceeded "
            f"limit of {stop.max_user_complaints}"
        )
    return None


def find_increment_blocker(stats: RolloutStats, config: RolloutConfig) -> Optional[str]:
    """Return why an increment is not allowed yet, or None when every gate passes."""
    if stats.total_users < config.min_sample_size:
        return f"insufficient sample size ({stats.total_users} < {config.min_sample_size})"
    if stats.error_rate > config.max_error_rate:
        return f"error rate {stats.error_rate:.2%} above {config.max_error_rate:.2%}"
    if stats.conversion_rate < config.min_conversion_rate:
        return f"conversion rate {stats.conversion_rate:.2%} below {config.min_conversion_rate:.2%}"
    return None


# =============================================================================
# Controller
# =============================================================================


@dataclass
class TrackedRollout:
    """In-memory record of one rollout owned by the controller."""
    config: RolloutConfig
    status: RolloutStatus
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    write_failures: int = 0
    distribution_dirty: bool = False


class RolloutController:
    """
    Owns every rollout's state machine and the periodic evaluation tick.

    Only the controller mutates RolloutStatus. Callers get deep copies.
    """

    def __init__(
        self,
        storage: StoragePort,
        distribution: DistributionPort,
        notifier: NotificationPort,
        aggregator: MetricsAggregator,
        feedback: Optional[FeedbackPort] = None,
        recorder: Optional[EventRecorder] = None,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        stats_window_hours: float = DEFAULT_STATS_WINDOW_HOURS,
        worker_concurrency: int = DEFAULT_WORKER_CONCURRENCY,
        status_write_attempts: int = DEFAULT_STATUS_WRITE_ATTEMPTS,
        feedback_score_floor: float = FEEDBACK_SCORE_FLOOR,
        clock: Callable[[], datetime] = utc_now,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self._storage = storage
        self._distribution = distribution
        self._notifier = notifier
        self._aggregator = aggregator
        self._feedback = feedback or NoFeedback()
        self._recorder = recorder

        self.stats_window_hours = stats_window_hours
        self.status_write_attempts = status_write_attempts
        self.feedback_score_floor = feedback_score_floor
        self._clock = clock

        self._rollouts: Dict[str, TrackedRollout] = {}
        self._registry_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(worker_concurrency)
        self._job = PeriodicJob(
            'rollout-tick', tick_interval_seconds, self.tick, scheduler=scheduler
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        self._job.start()

    async def stop(self) -> None:
        await self._job.stop()

    async def restore(self) -> int:
        """
        Reload persisted rollouts and re-apply their distribution.

        Run once at startup before `start()`. Non-terminal rollouts get their
        persisted percentage pushed to the distribution again, rolled back ones
        get 0, so an increment interrupted between the status write and the
        distribution update converges.

        Returns:
            Number of rollouts loaded.
        """
        persisted = await self._storage.load_rollouts()

        async with self._registry_lock:
            for config, status in persisted:
                self._rollouts[status.id] = TrackedRollout(config=config, status=status)

        for rollout_id, entry in list(self._rollouts.items()):
            if entry.status.status != RolloutState.COMPLETED:
                async with entry.lock:
                    await self._apply_distribution(entry, entry.status.current_percentage)

        logger.info(f"Restored {len(persisted)} rollouts from storage")
        return len(persisted)

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def start_rollout(self, config: Union[RolloutConfig, Mapping[str, Any]]) -> str:
        """
        Validate and start a rollout.

        Returns:
            The new rollout id, `rollout_<flag_key>_<epoch millis>`.

        Raises:
            RolloutConfigError: If the config is invalid.
            RolloutStateError: If the same variant already has an unfinished rollout.
        """
        config = validate_rollout_config(config)

        async with self._registry_lock:
            for existing in self._rollouts.values():
                if (
                    existing.config.flag_key == config.flag_key
                    and existing.config.target_variant == config.target_variant
                    and not existing.status.status.is_terminal
                ):
                    raise RolloutStateError(
                        f"Rollout {existing.status.id} for {config.flag_key}/{config.target_variant} "
                        f"is still {existing.status.status.value}"
                    )

            now = self._clock()
            rollout_id = self._new_rollout_id(config.flag_key, now)

            await self._storage.save_rollout_config(rollout_id, config)

            status = RolloutStatus(
                id=rollout_id,
                flag_key=config.flag_key,
                target_variant=config.target_variant,
                current_percentage=config.initial_percentage,
                target_percentage=config.target_percentage,
                status=RolloutState.ACTIVE,
                increment_history=[
                    IncrementRecord(
                        timestamp=now,
                        from_percentage=0,
                        to_percentage=config.initial_percentage,
                        reason=REASON_INITIAL,
                        metrics=RolloutStats(),
                    )
                ],
                next_scheduled_increment=calculate_next_increment(config.initial_percentage, config, now),
                last_updated=now,
            )
            await self._storage.save_rollout_status(rollout_id, status)

            entry = TrackedRollout(config=config, status=status)
            self._rollouts[rollout_id] = entry

        async with entry.lock:
            await self._apply_distribution(entry, config.initial_percentage)

        logger.info(
            f"Started rollout {rollout_id}: {config.flag_key}/{config.target_variant} "
            f"{config.initial_percentage}% -> {config.target_percentage}% by {config.created_by}"
        )
        return rollout_id

    async def pause(self, rollout_id: str, reason: str) -> RolloutStatus:
        """Pause an active rollout. Percentage is kept and the schedule cleared."""
        entry = self._get_entry(rollout_id)

        async with entry.lock:
            current = entry.status
            if current.status != RolloutState.ACTIVE:
                raise RolloutStateError(
                    f"Cannot pause rollout {rollout_id} in state {current.status.value}"
                )

            now = self._clock()
            entry.status = self._transition(
                current,
                RolloutState.PAUSED,
                now,
                reason=f"Paused: {reason}",
                next_scheduled_increment=None,
            )
            await self._save(entry, entry.status)

            logger.info(f"Paused rollout {rollout_id}: {reason}")
            return entry.status.model_copy(deep=True)

    async def resume(self, rollout_id: str, reason: str) -> RolloutStatus:
        """
        Resume a paused or failed rollout.

        Raises:
            RolloutStateError: If the rollout is neither paused nor failed.
            RolloutPersistenceError: If the resumed status cannot be written.
        """
        entry = self._get_entry(rollout_id)

        async with entry.lock:
            current = entry.status
            if current.status not in (RolloutState.PAUSED, RolloutState.FAILED):
                raise RolloutStateError(
                    f"Cannot resume rollout {rollout_id} in state {current.status.value}"
                )

            now = self._clock()
            resumed = self._transition(
                current,
                RolloutState.ACTIVE,
                now,
                reason=f"Resumed: {reason}",
                next_scheduled_increment=calculate_next_increment(
                    current.current_percentage, entry.config, now
                ),
                failure_reason=None,
            )
            if not await self._save(entry, resumed):
                raise RolloutPersistenceError(f"Could not persist resumed rollout {rollout_id}")

            entry.status = resumed
            logger.info(f"Resumed rollout {rollout_id} from {current.status.value}: {reason}")
            return entry.status.model_copy(deep=True)

    async def rollback(self, rollout_id: str, reason: str) -> RolloutStatus:
        """
        Roll a rollout back to 0%.

        Allowed from active, paused and failed. Rolling back an already rolled
        back rollout is a no-op.

        Raises:
            RolloutStateError: If the rollout has completed.
        """
        entry = self._get_entry(rollout_id)

        async with entry.lock:
            state = entry.status.status
            if state == RolloutState.ROLLED_BACK:
                return entry.status.model_copy(deep=True)
            if state == RolloutState.COMPLETED:
                raise RolloutStateError(f"Cannot roll back completed rollout {rollout_id}")

            await self._roll_back(entry, reason, self._clock())
            return entry.status.model_copy(deep=True)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_status(self, rollout_id: str) -> RolloutStatus:
        return self._get_entry(rollout_id).status.model_copy(deep=True)

    def list_statuses(self) -> List[RolloutStatus]:
        return [entry.status.model_copy(deep=True) for entry in self._rollouts.values()]

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self, now: Optional[datetime] = None) -> int:
        """
        Evaluate every active rollout once.

        Rollouts run concurrently up to the worker limit; one rollout failing
        does not stop the others.

        Returns:
            Number of rollouts evaluated.
        """
        now = now or self._clock()
        rollout_ids = [
            rollout_id
            for rollout_id, entry in self._rollouts.items()
            if entry.status.status == RolloutState.ACTIVE or entry.distribution_dirty
        ]
        if not rollout_ids:
            return 0

        await asyncio.gather(*(self._process_safely(rollout_id, now) for rollout_id in rollout_ids))
        return len(rollout_ids)

    async def _process_safely(self, rollout_id: str, now: datetime) -> None:
        try:
            await self.process_rollout(rollout_id, now)
        except Exception:
            logger.exception(f"Error evaluating rollout {rollout_id}")

    async def process_rollout(self, rollout_id: str, now: Optional[datetime] = None) -> RolloutStatus:
        """Evaluate one rollout: refresh stats, emergency stop, increment, completion."""
        entry = self._get_entry(rollout_id)
        now = now or self._clock()

        async with self._semaphore:
            async with entry.lock:
                if entry.distribution_dirty:
                    await self._apply_distribution(entry, entry.status.current_percentage)

                if entry.status.status != RolloutState.ACTIVE:
                    return entry.status.model_copy(deep=True)

                stats = await self._collect_stats(entry, now)
                entry.status.current_stats = stats

                stop_reason = find_emergency_stop_reason(stats, entry.config, self.feedback_score_floor)
                if stop_reason:
                    logger.warning(f"Emergency stop for rollout {rollout_id}: {stop_reason}")
                    await self._roll_back(entry, f"Emergency stop: {stop_reason}", now)
                    return entry.status.model_copy(deep=True)

                await self._maybe_increment(entry, stats, now)

                status = entry.status
                if status.status == RolloutState.ACTIVE and status.current_percentage >= status.target_percentage:
                    await self._complete(entry, now)

                return entry.status.model_copy(deep=True)

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_entry(self, rollout_id: str) -> TrackedRollout:
        entry = self._rollouts.get(rollout_id)
        if entry is None:
            raise RolloutNotFoundError(rollout_id)
        return entry

    def _new_rollout_id(self, flag_key: str, now: datetime) -> str:
        millis = to_epoch_millis(now)
        rollout_id = f"rollout_{flag_key}_{millis}"
        while rollout_id in self._rollouts:
            millis += 1
            rollout_id = f"rollout_{flag_key}_{millis}"
        return rollout_id

    @staticmethod
    def _transition(
        status: RolloutStatus,
        new_state: RolloutState,
        now: datetime,
        reason: str,
        to_percentage: Optional[float] = None,
        **updates: Any,
    ) -> RolloutStatus:
        """Copy of `status` moved to `new_state` with one audit entry appended."""
        updated = status.model_copy(deep=True, update=updates)
        from_percentage = status.current_percentage
        if to_percentage is not None:
            updated.current_percentage = to_percentage
        updated.status = new_state
        updated.last_updated = now
        updated.increment_history.append(
            IncrementRecord(
                timestamp=now,
                from_percentage=from_percentage,
                to_percentage=updated.current_percentage,
                reason=reason,
                metrics=status.current_stats.model_copy(),
            )
        )
        return updated

    async def _collect_stats(self, entry: TrackedRollout, now: datetime) -> RolloutStats:
        window = DateRange.trailing(self.stats_window_hours, now)
        metrics = await self._aggregator.compute_variant_metrics(
            entry.config.flag_key, entry.config.target_variant, window
        )

        feedback: Optional[FeedbackSignal] = None
        try:
            feedback = await self._feedback.get_feedback(entry.config.flag_key, entry.config.target_variant)
        except Exception:
            logger.exception(f"Feedback lookup failed for rollout {entry.status.id}")

        return RolloutStats(
            total_users=metrics.total_users if metrics else 0,
            error_rate=metrics.error_rate if metrics else 0.0,
            conversion_rate=metrics.conversion_rate if metrics else 0.0,
            user_feedback_score=feedback.score if feedback else None,
            user_complaints=feedback.complaints if feedback else None,
        )

    async def _maybe_increment(self, entry: TrackedRollout, stats: RolloutStats, now: datetime) -> None:
        status = entry.status
        schedule = status.next_scheduled_increment
        if schedule is None or schedule.scheduled_at > now:
            return

        blocker = find_increment_blocker(stats, entry.config)
        if blocker:
            logger.info(f"Increment for rollout {status.id} held back: {blocker}")
            return

        from_percentage = status.current_percentage
        to_percentage = min(from_percentage + entry.config.increment_percentage, status.target_percentage)

        updated = self._transition(
            status,
            RolloutState.ACTIVE,
            now,
            reason=REASON_INCREMENT,
            to_percentage=to_percentage,
            next_scheduled_increment=calculate_next_increment(to_percentage, entry.config, now),
        )
        if not await self._save(entry, updated):
            return

        entry.status = updated
        await self._apply_distribution(entry, to_percentage)
        self._record_increment_event(entry, from_percentage, to_percentage)

        logger.info(
            f"Rollout {status.id} incremented {from_percentage}% -> {to_percentage}% "
            f"(users={stats.total_users}, error_rate={stats.error_rate:.2%}, "
            f"conversion_rate={stats.conversion_rate:.2%})"
        )

    async def _complete(self, entry: TrackedRollout, now: datetime) -> None:
        completed = self._transition(
            entry.status,
            RolloutState.COMPLETED,
            now,
            reason=REASON_COMPLETED,
            next_scheduled_increment=None,
        )
        if not await self._save(entry, completed):
            return

        entry.status = completed
        logger.info(f"Rollout {completed.id} completed at {completed.current_percentage}%")
        await self._send_completion(
            f"Rollout {completed.id} completed: {completed.flag_key}/{completed.target_variant} "
            f"is now served to {completed.current_percentage}% of users."
        )

    async def _roll_back(self, entry: TrackedRollout, reason: str, now: datetime) -> None:
        """Withdraw the variant, then record the rollback. Never raises on I/O failure."""
        await self._apply_distribution(entry, 0.0, force_percentage=True)

        entry.status = self._transition(
            entry.status,
            RolloutState.ROLLED_BACK,
            now,
            reason=f"Rollback: {reason}",
            to_percentage=0.0,
            next_scheduled_increment=None,
        )
        await self._save(entry, entry.status)

        status = entry.status
        logger.warning(f"Rolled back rollout {status.id}: {reason}")
        await self._send_alert(
            f"Rollout {status.id} for {status.flag_key}/{status.target_variant} "
            f"was rolled back to 0%: {reason}"
        )

    async def _mark_failed(self, entry: TrackedRollout, reason: str) -> None:
        entry.status = self._transition(
            entry.status,
            RolloutState.FAILED,
            self._clock(),
            reason=f"Failed: {reason}",
            next_scheduled_increment=None,
            failure_reason=reason,
        )
        try:
            await self._storage.save_rollout_status(entry.status.id, entry.status)
        except Exception as e:
            logger.error(f"Could not persist failed state of rollout {entry.status.id}: {e}")

        logger.error(f"Rollout {entry.status.id} failed: {reason}")
        await self._send_alert(
            f"Rollout {entry.status.id} for {entry.status.flag_key}/{entry.status.target_variant} "
            f"failed and needs operator attention: {reason}"
        )

    async def _save(self, entry: TrackedRollout, status: RolloutStatus) -> bool:
        """
        Persist `status`. Returns False on failure.

        Consecutive failures are counted per rollout; reaching
        `status_write_attempts` moves a non-terminal rollout to `failed`.
        """
        try:
            await self._storage.save_rollout_status(status.id, status)
        except Exception as e:
            entry.write_failures += 1
            logger.error(
                f"Failed to persist rollout {status.id} "
                f"({entry.write_failures}/{self.status_write_attempts}): {e}"
            )
            state = entry.status.status
            if (
                entry.write_failures >= self.status_write_attempts
                and not state.is_terminal
                and state != RolloutState.FAILED
            ):
                await self._mark_failed(
                    entry,
                    f"status write failed {entry.write_failures} times in a row: {e}",
                )
            return False

        entry.write_failures = 0
        return True

    async def _apply_distribution(
        self,
        entry: TrackedRollout,
        percentage: float,
        force_percentage: bool = False,
    ) -> bool:
        """
        Push a percentage to the distribution. On failure the rollout is marked
        dirty and the committed percentage is re-applied on the next tick.
        """
        try:
            await self._distribution.set_variant_percentage(
                entry.config.flag_key, entry.config.target_variant, percentage
            )
        except Exception:
            entry.distribution_dirty = True
            logger.exception(
                f"Failed to set {entry.config.flag_key}/{entry.config.target_variant} to {percentage}%"
            )
            return False

        if force_percentage or percentage == entry.status.current_percentage:
            entry.distribution_dirty = False
        return True

    def _record_increment_event(self, entry: TrackedRollout, from_percentage: float, to_percentage: float) -> None:
        if self._recorder is None:
            return
        self._recorder.track_event(
            EventType.PERFORMANCE,
            SYSTEM_USER_ID,
            entry.config.flag_key,
            entry.config.target_variant,
            custom_data={
                'rollout_id': entry.status.id,
                'action': 'increment',
                'from_percentage': from_percentage,
                'to_percentage': to_percentage,
            },
        )

    async def _send_alert(self, message: str) -> None:
        try:
            await self._notifier.send_alert(message)
        except Exception:
            logger.exception("Alert notification failed")

    async def _send_completion(self, message: str) -> None:
        try:
            await self._notifier.send_completion(message)
        except Exception:
            logger.exception("Completion notification failed")
