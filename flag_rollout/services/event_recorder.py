"""
Event Recorder: buffered, batched event ingestion.

Request-handling code calls `record()` (or one of the `track_*` helpers); the
event is completed with a session id, variant and timestamp and appended to an
in-memory buffer. The buffer is flushed to the Storage Port in one batch when
it reaches `batch_size` or when the periodic flush timer fires.

Guarantees:
- `record()` never awaits I/O and never raises because storage is down.
- A flush swaps the whole buffer out under the lock, so no event is flushed
  twice and none is lost to a concurrent append.
- A failed batch goes back to the front of the buffer in arrival order and is
  retried on the next tick.
- The buffer is bounded by `max_buffer_size`. Past the cap the oldest events
  are dropped and counted in `dropped`; this is a deliberate lossy
  degradation during a sustained storage outage.
"""

import asyncio
import logging
import secrets
import string
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from flag_rollout.jobs.scheduler import PeriodicJob
from flag_rollout.models import (
    Event,
    EventData,
    EventType,
    RecorderStats,
    UserRole,
)
from flag_rollout.services.ports import StoragePort


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE: int = 10
DEFAULT_FLUSH_INTERVAL_SECONDS: float = 5.0
DEFAULT_MAX_BUFFER_SIZE: int = 10_000

_SESSION_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_id() -> str:
    """Session id in the form `session_<epoch millis>_<9 base36 chars>`."""
    suffix = ''.join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


def complete_event(data: Union[EventData, Event, Mapping[str, Any]]) -> Event:
    """
    Fill the fields request code may leave out and freeze the event.

    - session_id: generated when absent
    - variant: defaults to flag_value
    - timestamp: now (epoch millis) when absent
    """
    if isinstance(data, Event):
        return data
    if not isinstance(data, EventData):
        data = EventData.model_validate(data)

    fields = data.model_dump()
    fields['session_id'] = data.session_id or generate_session_id()
    fields['variant'] = data.variant or data.flag_value
    fields['timestamp'] = data.timestamp if data.timestamp is not None else int(time.time() * 1000)
    return Event.model_validate(fields)


class EventRecorder:
    """
    Buffers events and flushes them to storage in batches.

    Construct once at process start, call `start()` from the event loop and
    `stop()` on shutdown to drain the buffer.
    """

    def __init__(
        self,
        storage: StoragePort,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_buffer_size < batch_size:
            raise ValueError("max_buffer_size must be >= batch_size")

        self._storage = storage
        self.batch_size = batch_size
        self.max_buffer_size = max_buffer_size

        self._buffer: Deque[Event] = deque()
        self._lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self._job = PeriodicJob(
            'event-flush', flush_interval_seconds, self.flush, scheduler=scheduler
        )

        self._flushed = 0
        self._dropped = 0
        self._failed_flushes = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        self._job.start()

    async def stop(self) -> None:
        """Stop the flush timer and flush whatever is still buffered."""
        await self._job.stop()
        await self.flush()
        remaining = self.buffered
        if remaining:
            logger.error(f"Event recorder stopped with {remaining} unflushed events")

    # =========================================================================
    # Recording
    # =========================================================================

    def record(self, data: Union[EventData, Event, Mapping[str, Any]]) -> Event:
        """
        Complete and buffer one event.

        Returns the completed event. Triggers an early flush once the buffer
        holds `batch_size` events.
        """
        event = complete_event(data)

        with self._lock:
            self._buffer.append(event)
            self._enforce_cap_locked()
            size = len(self._buffer)

        if size >= self.batch_size:
            self._job.trigger()
        return event

    def track_event(
        self,
        event_type: Union[EventType, str],
        user_id: str,
        flag_key: str,
        flag_value: str,
        **context: Any,
    ) -> Event:
        return self.record(EventData(
            event_type=event_type,
            user_id=user_id,
            flag_key=flag_key,
            flag_value=flag_value,
            **context,
        ))

    def track_flag_assignment(
        self,
        user_id: str,
        flag_key: str,
        flag_value: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Event:
        context = context or {}
        return self.track_event(
            EventType.FLAG_ASSIGNMENT,
            user_id,
            flag_key,
            flag_value,
            user_role=context.get('user_role'),
            device_type=context.get('device_type'),
            country=context.get('country'),
            custom_data=context or None,
        )

    def track_onboarding_start(
        self,
        user_id: str,
        user_role: Union[UserRole, str],
        flags: Mapping[str, str],
    ) -> List[Event]:
        return [
            self.track_event(
                EventType.ONBOARDING_START,
                user_id,
                flag_key,
                flag_value,
                user_role=user_role,
                onboarding_step='welcome',
                step_index=0,
            )
            for flag_key, flag_value in flags.items()
        ]

    def track_onboarding_step(
        self,
        user_id: str,
        step_name: str,
        step_index: int,
        total_steps: int,
        flags: Mapping[str, str],
        duration: Optional[float] = None,
    ) -> List[Event]:
        return [
            self.track_event(
                EventType.ONBOARDING_STEP,
                user_id,
                flag_key,
                flag_value,
                onboarding_step=step_name,
                step_index=step_index,
                total_steps=total_steps,
                duration=duration,
            )
            for flag_key, flag_value in flags.items()
        ]

    def track_onboarding_complete(
        self,
        user_id: str,
        user_role: Union[UserRole, str],
        flags: Mapping[str, str],
        total_duration: float,
    ) -> List[Event]:
        """Record completion and, for each flag, the matching conversion."""
        events: List[Event] = []
        for flag_key, flag_value in flags.items():
            for event_type in (EventType.ONBOARDING_COMPLETE, EventType.CONVERSION):
                events.append(self.track_event(
                    event_type,
                    user_id,
                    flag_key,
                    flag_value,
                    user_role=user_role,
                    duration=total_duration,
                ))
        return events

    def track_onboarding_abandon(
        self,
        user_id: str,
        current_step: str,
        step_index: int,
        flags: Mapping[str, str],
        reason: Optional[str] = None,
    ) -> List[Event]:
        custom_data = {'reason': reason} if reason is not None else None
        return [
            self.track_event(
                EventType.ONBOARDING_ABANDON,
                user_id,
                flag_key,
                flag_value,
                onboarding_step=current_step,
                step_index=step_index,
                custom_data=custom_data,
            )
            for flag_key, flag_value in flags.items()
        ]

    def track_form_validation_error(
        self,
        user_id: str,
        form_field: str,
        error_message: str,
        flags: Mapping[str, str],
    ) -> List[Event]:
        return [
            self.track_event(
                EventType.FORM_VALIDATION_ERROR,
                user_id,
                flag_key,
                flag_value,
                form_field=form_field,
                error_message=error_message,
            )
            for flag_key, flag_value in flags.items()
        ]

    # =========================================================================
    # Flushing
    # =========================================================================

    async def flush(self) -> int:
        """
        Flush the buffered events to storage in one batch.

        Returns:
            Number of events written (0 when the buffer was empty or the write failed).
        """
        async with self._flush_lock:
            with self._lock:
                if not self._buffer:
                    return 0
                batch = list(self._buffer)
                self._buffer.clear()

            try:
                await self._storage.append_events(batch)
            except asyncio.CancelledError:
                self._requeue(batch)
                raise
            except Exception as e:
                self._requeue(batch)
                self._failed_flushes += 1
                logger.warning(
                    f"Failed to flush {len(batch)} events, re-queued for next tick: {e}"
                )
                return 0

            self._flushed += len(batch)
            logger.debug(f"Flushed {len(batch)} events")
            return len(batch)

    def _requeue(self, batch: List[Event]) -> None:
        with self._lock:
            self._buffer.extendleft(reversed(batch))
            self._enforce_cap_locked()

    def _enforce_cap_locked(self) -> None:
        overflow = len(self._buffer) - self.max_buffer_size
        if overflow <= 0:
            return
        for _ in range(overflow):
            self._buffer.popleft()
        self._dropped += overflow
        logger.warning(
            f"Event buffer over capacity ({self.max_buffer_size}), dropped {overflow} oldest events "
            f"({self._dropped} dropped in total)"
        )

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def buffered(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def dropped(self) -> int:
        return self._dropped

    def snapshot(self) -> List[Event]:
        """Copy of the buffered events in arrival order."""
        with self._lock:
            return list(self._buffer)

    def stats(self) -> RecorderStats:
        return RecorderStats(
            buffered=self.buffered,
            flushed=self._flushed,
            dropped=self._dropped,
            failed_flushes=self._failed_flushes,
        )
