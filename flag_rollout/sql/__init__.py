"""
SQL Query Module for the flag rollout service.

Provides parameterized asyncpg queries for:
- Behavioral events (event_queries)
- Rollout configs, statuses and the live variant distribution (rollout_queries)

Example usage:
    from flag_rollout.sql import get_events_in_range_query

    rows = await conn.fetch(get_events_in_range_query(), flag_key, start_ms, end_ms)
"""

from flag_rollout.sql.event_queries import (
    EVENTS_TABLE,
    EVENT_COLUMNS,
    get_create_events_table_query,
    get_insert_event_query,
    get_events_in_range_query,
)
from flag_rollout.sql.rollout_queries import (
    CONFIGS_TABLE,
    STATUS_TABLE,
    DISTRIBUTION_TABLE,
    get_create_rollout_tables_query,
    get_insert_config_query,
    get_upsert_status_query,
    get_load_rollouts_query,
    get_upsert_distribution_query,
    get_distribution_query,
)


__all__ = [
    'EVENTS_TABLE',
    'EVENT_COLUMNS',
    'get_create_events_table_query',
    'get_insert_event_query',
    'get_events_in_range_query',
    'CONFIGS_TABLE',
    'STATUS_TABLE',
    'DISTRIBUTION_TABLE',
    'get_create_rollout_tables_query',
    'get_insert_config_query',
    'get_upsert_status_query',
    'get_load_rollouts_query',
    'get_upsert_distribution_query',
    'get_distribution_query',
]
