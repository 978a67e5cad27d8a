"""
Metrics Aggregator: raw events to per-variant conversion metrics.

Events for one flag are loaded into a pandas DataFrame and grouped by variant
in first-encountered order. For each variant:

- total_users: distinct user_id values
- conversions: distinct users with at least one `conversion` event
- conversion_rate: conversions / total_users (0 when there are no users)
- average_time_to_conversion: mean `duration` (ms) of conversion events that
  carry one; 0 when none do
- drop_off_points: `onboarding_abandon` events per step ("unknown" when the
  step is missing) divided by total_users
- error_users / error_rate: distinct users with an `error` event, and that
  count divided by total_users

Events recorded under `SYSTEM_USER_ID` are audit records (rollout increments)
and are left out of every count.

Metrics are always recomputed from events and never stored. The computation
is pure: the same events give the same metrics.
"""

import logging
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

from flag_rollout.models import (
    ConversionMetrics,
    DateRange,
    DropOffPoint,
    Event,
    EventType,
)
from flag_rollout.services.ports import StoragePort


logger = logging.getLogger(__name__)

UNKNOWN_STEP: str = 'unknown'
SYSTEM_USER_ID: str = 'system'

EVENT_FRAME_COLUMNS: List[str] = [
    'variant',
    'user_id',
    'event_type',
    'duration',
    'onboarding_step',
]


def events_to_frame(events: Iterable[Event]) -> pd.DataFrame:
    """Project user events onto the columns the aggregation needs."""
    rows = [
        {
            'variant': event.variant,
            'user_id': event.user_id,
            'event_type': EventType(event.event_type).value,
            'duration': event.duration,
            'onboarding_step': event.onboarding_step or UNKNOWN_STEP,
        }
        for event in events
        if event.user_id != SYSTEM_USER_ID
    ]
    return pd.DataFrame(rows, columns=EVENT_FRAME_COLUMNS)


def _safe_ratio(numerator: float, denominator: float) -> float:
    return float(numerator) / float(denominator) if denominator else 0.0


def _variant_metrics(flag_key: str, variant: str, group: pd.DataFrame) -> ConversionMetrics:
    total_users = int(group['user_id'].nunique())

    conversion_events = group[group['event_type'] == EventType.CONVERSION.value]
    conversions = int(conversion_events['user_id'].nunique())

    durations = pd.to_numeric(conversion_events['duration'], errors='coerce').dropna()
    average_time = float(np.mean(durations.to_numpy())) if len(durations) else 0.0

    abandon_steps = group.loc[
        group['event_type'] == EventType.ONBOARDING_ABANDON.value, 'onboarding_step'
    ]
    drop_off_points = [
        DropOffPoint(step=str(step), drop_off_rate=_safe_ratio(count, total_users))
        for step, count in abandon_steps.groupby(abandon_steps, sort=False).size().items()
    ]

    error_users = int(
        group.loc[group['event_type'] == EventType.ERROR.value, 'user_id'].nunique()
    )

    return ConversionMetrics(
        flag_key=flag_key,
        variant=variant,
        total_users=total_users,
        conversions=conversions,
        conversion_rate=_safe_ratio(conversions, total_users),
        average_time_to_conversion=average_time,
        drop_off_points=drop_off_points,
        error_users=error_users,
        error_rate=_safe_ratio(error_users, total_users),
    )


def calculate_conversion_metrics(flag_key: str, events: Iterable[Event]) -> List[ConversionMetrics]:
    """
    Compute conversion metrics for every variant of `flag_key` found in `events`.

    Events for other flags are ignored. Variants come back in the order they
    first appear in `events`.

    Args:
        flag_key: Feature flag key.
        events: Events in chronological order.

    Returns:
        One ConversionMetrics per variant; empty when there are no events.
    """
    df = events_to_frame(e for e in events if e.flag_key == flag_key)
    if df.empty:
        return []

    return [
        _variant_metrics(flag_key, str(variant), group)
        for variant, group in df.groupby('variant', sort=False)
    ]


class MetricsAggregator:
    """Loads events from storage and aggregates them per variant."""

    def __init__(self, storage: StoragePort) -> None:
        self._storage = storage

    async def compute_metrics(
        self,
        flag_key: str,
        date_range: Optional[DateRange] = None,
    ) -> List[ConversionMetrics]:
        date_range = date_range or DateRange.all_time()
        events = await self._storage.query_events(flag_key, date_range)
        metrics = calculate_conversion_metrics(flag_key, events)
        logger.debug(
            f"Computed metrics for {flag_key}: {len(events)} events, {len(metrics)} variants"
        )
        return metrics

    async def compute_variant_metrics(
        self,
        flag_key: str,
        variant: str,
        date_range: Optional[DateRange] = None,
    ) -> Optional[ConversionMetrics]:
        """Metrics for a single variant, or None when it has no events in range."""
        metrics = await self.compute_metrics(flag_key, date_range)
        return next((m for m in metrics if m.variant == variant), None)
