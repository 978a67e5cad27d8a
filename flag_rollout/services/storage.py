"""
PostgreSQL adapters for the storage and distribution ports.

Both adapters share the asyncpg pool from `flag_rollout.core.database`. They
take the pool provider as a constructor argument (defaulting to
`get_db_pool`) so tests can hand in a mocked pool.

JSON-shaped fields (custom_data, stats, history, configs) are written as JSON
text and cast to JSONB in SQL; on read they are decoded from whatever asyncpg
returns (text by default).
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence, Tuple

from asyncpg import Pool

from flag_rollout.core.database import get_db_pool
from flag_rollout.models import (
    DateRange,
    Event,
    IncrementRecord,
    RolloutConfig,
    RolloutStats,
    RolloutStatus,
    ScheduledIncrement,
)
from flag_rollout.services.ports import DistributionPort, StoragePort
from flag_rollout.sql.event_queries import (
    EVENT_COLUMNS,
    get_create_events_table_query,
    get_events_in_range_query,
    get_insert_event_query,
)
from flag_rollout.sql.rollout_queries import (
    get_create_rollout_tables_query,
    get_distribution_query,
    get_insert_config_query,
    get_load_rollouts_query,
    get_upsert_distribution_query,
    get_upsert_status_query,
)


logger = logging.getLogger(__name__)

PoolProvider = Callable[[], Awaitable[Pool]]


def _decode_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode('utf-8')
    if isinstance(value, str):
        return json.loads(value)
    return value


def _enum_value(value: Any) -> Any:
    return getattr(value, 'value', value)


# =============================================================================
# Row mapping
# =============================================================================


def event_to_record(event: Event) -> Tuple[Any, ...]:
    """Positional parameters for the event insert, in EVENT_COLUMNS order."""
    values: Dict[str, Any] = {
        'event_type': _enum_value(event.event_type),
        'user_id': event.user_id,
        'session_id': event.session_id,
        'flag_key': event.flag_key,
        'flag_value': event.flag_value,
        'variant': event.variant,
        'event_timestamp': event.timestamp,
        'user_role': _enum_value(event.user_role),
        'onboarding_step': event.onboarding_step,
        'step_index': event.step_index,
        'total_steps': event.total_steps,
        'duration_ms': event.duration,
        'error_message': event.error_message,
        'form_field': event.form_field,
        'interaction_type': event.interaction_type,
        'user_agent': event.user_agent,
        'device_type': _enum_value(event.device_type),
        'country': event.country,
        'custom_data': json.dumps(event.custom_data) if event.custom_data is not None else None,
    }
    return tuple(values[column] for column in EVENT_COLUMNS)


def record_to_event(row: Mapping[str, Any]) -> Event:
    return Event(
        event_type=row['event_type'],
        user_id=row['user_id'],
        session_id=row['session_id'],
        flag_key=row['flag_key'],
        flag_value=row['flag_value'],
        variant=row['variant'],
        timestamp=row['event_timestamp'],
        user_role=row['user_role'],
        onboarding_step=row['onboarding_step'],
        step_index=row['step_index'],
        total_steps=row['total_steps'],
        duration=row['duration_ms'],
        error_message=row['error_message'],
        form_field=row['form_field'],
        interaction_type=row['interaction_type'],
        user_agent=row['user_agent'],
        device_type=row['device_type'],
        country=row['country'],
        custom_data=_decode_json(row['custom_data']),
    )


def status_to_record(status: RolloutStatus) -> Tuple[Any, ...]:
    history = [record.model_dump(mode='json') for record in status.increment_history]
    schedule = status.next_scheduled_increment
    return (
        status.id,
        status.flag_key,
        status.target_variant,
        float(status.current_percentage),
        float(status.target_percentage),
        status.status.value,
        status.current_stats.model_dump_json(),
        json.dumps(history),
        schedule.model_dump_json() if schedule is not None else None,
        status.failure_reason,
        status.last_updated,
    )


def record_to_rollout(row: Mapping[str, Any]) -> Tuple[RolloutConfig, RolloutStatus]:
    config = RolloutConfig.model_validate(_decode_json(row['config_data']))
    schedule = _decode_json(row['next_scheduled_increment'])

    status = RolloutStatus(
        id=row['id'],
        flag_key=row['flag_key'],
        target_variant=row['target_variant'],
        current_percentage=row['current_percentage'],
        target_percentage=row['target_percentage'],
        status=row['status'],
        current_stats=RolloutStats.model_validate(_decode_json(row['current_stats'])),
        increment_history=[
            IncrementRecord.model_validate(item)
            for item in _decode_json(row['increment_history']) or []
        ],
        next_scheduled_increment=ScheduledIncrement.model_validate(schedule) if schedule else None,
        last_updated=row['last_updated'],
        failure_reason=row['failure_reason'],
    )
    return config, status


# =============================================================================
# Adapters
# =============================================================================


class PostgresStorage(StoragePort):
    """StoragePort backed by PostgreSQL through asyncpg."""

    def __init__(self, pool_provider: PoolProvider = get_db_pool) -> None:
        self._pool_provider = pool_provider

    async def ensure_schema(self) -> None:
        """Create the tables when they do not exist yet."""
        pool = await self._pool_provider()
        async with pool.acquire() as conn:
            await conn.execute(get_create_events_table_query())
            await conn.execute(get_create_rollout_tables_query())
        logger.info("Rollout schema ensured")

    async def append_events(self, events: Sequence[Event]) -> None:
        if not events:
            return

        records = [event_to_record(event) for event in events]
        pool = await self._pool_provider()
        async with pool.acquire() as conn:
            await conn.executemany(get_insert_event_query(), records)

        logger.debug(f"Inserted {len(records)} events")

    async def query_events(self, flag_key: str, date_range: DateRange) -> List[Event]:
        pool = await self._pool_provider()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                get_events_in_range_query(),
                flag_key,
                date_range.start_millis,
                date_range.end_millis,
            )
        return [record_to_event(row) for row in rows]

    async def save_rollout_config(self, rollout_id: str, config: RolloutConfig) -> None:
        pool = await self._pool_provider()
        async with pool.acquire() as conn:
            await conn.execute(
                get_insert_config_query(),
                rollout_id,
                config.flag_key,
                config.target_variant,
                config.model_dump_json(),
            )

    async def save_rollout_status(self, rollout_id: str, status: RolloutStatus) -> None:
        if status.id != rollout_id:
            raise ValueError(f"Status id {status.id} does not match rollout id {rollout_id}")

        pool = await self._pool_provider()
        async with pool.acquire() as conn:
            await conn.execute(get_upsert_status_query(), *status_to_record(status))

    async def load_rollouts(self) -> List[Tuple[RolloutConfig, RolloutStatus]]:
        pool = await self._pool_provider()
        async with pool.acquire() as conn:
            rows = await conn.fetch(get_load_rollouts_query())
        return [record_to_rollout(row) for row in rows]


class PostgresDistribution(DistributionPort):
    """
    DistributionPort that writes the live percentage to
    `flag_variant_distribution`, where the flag-serving layer reads it.
    """

    def __init__(self, pool_provider: PoolProvider = get_db_pool) -> None:
        self._pool_provider = pool_provider

    async def set_variant_percentage(self, flag_key: str, variant: str, percentage: float) -> None:
        if not 0 <= percentage <= 100:
            raise ValueError(f"percentage must be within [0, 100], got {percentage}")

        pool = await self._pool_provider()
        async with pool.acquire() as conn:
            await conn.execute(get_upsert_distribution_query(), flag_key, variant, float(percentage))

        logger.info(f"Distribution for {flag_key}/{variant} set to {percentage}%")

    async def get_distribution(self, flag_key: str) -> Dict[str, float]:
        pool = await self._pool_provider()
        async with pool.acquire() as conn:
            rows = await conn.fetch(get_distribution_query(), flag_key)
        return {row['variant']: float(row['percentage']) for row in rows}
