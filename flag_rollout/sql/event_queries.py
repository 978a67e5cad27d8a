"""
Parameterized SQL for the `ab_test_events` table.

Events are append-only. `event_timestamp` holds the client timestamp in epoch
milliseconds and drives every time-window query; `created_at` is the insert
time on the database side.

All queries use asyncpg positional parameters ($1, $2, ...).
"""

from typing import List


# =============================================================================
# CONSTANTS
# =============================================================================

EVENTS_TABLE: str = "ab_test_events"

# Column order shared by the insert statement and the record builder
EVENT_COLUMNS: List[str] = [
    "event_type",
    "user_id",
    "session_id",
    "flag_key",
    "flag_value",
    "variant",
    "event_timestamp",
    "user_role",
    "onboarding_step",
    "step_index",
    "total_steps",
    "duration_ms",
    "error_message",
    "form_field",
    "interaction_type",
    "user_agent",
    "device_type",
    "country",
    "custom_data",
]


# =============================================================================
# DDL
# =============================================================================

def get_create_events_table_query() -> str:
    """DDL for the events table and its lookup index. Safe to run repeatedly."""
    return f"""
    CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
        id BIGSERIAL PRIMARY KEY,
        event_type TEXT NOT NULL,
        user_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        flag_key TEXT NOT NULL,
        flag_value TEXT NOT NULL,
        variant TEXT NOT NULL,
        event_timestamp BIGINT NOT NULL,
        user_role TEXT,
        onboarding_step TEXT,
        step_index INTEGER,
        total_steps INTEGER,
        duration_ms DOUBLE PRECISION,
        error_message TEXT,
        form_field TEXT,
        interaction_type TEXT,
        user_agent TEXT,
        device_type TEXT,
        country TEXT,
        custom_data JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_{EVENTS_TABLE}_flag_time
        ON {EVENTS_TABLE} (flag_key, event_timestamp);
    """


# =============================================================================
# WRITES
# =============================================================================

def get_insert_event_query() -> str:
    """
    INSERT for one event row, meant for `executemany`.

    Parameters follow EVENT_COLUMNS; `custom_data` is passed as JSON text.
    """
    placeholders = [f"${i}" for i in range(1, len(EVENT_COLUMNS) + 1)]
    placeholders[EVENT_COLUMNS.index("custom_data")] += "::jsonb"

    return f"""
    INSERT INTO {EVENTS_TABLE} ({", ".join(EVENT_COLUMNS)})
    VALUES ({", ".join(placeholders)})
    """


# =============================================================================
# READS
# =============================================================================

def get_events_in_range_query() -> str:
    """
    Events for one flag within an inclusive millisecond window, oldest first.

    Parameters:
        $1: flag_key
        $2: window start (epoch millis)
        $3: window end (epoch millis)
    """
    return f"""
    SELECT {", ".join(EVENT_COLUMNS)}
    FROM {EVENTS_TABLE}
    WHERE flag_key = $1
      AND event_timestamp >= $2
      AND event_timestamp <= $3
    ORDER BY event_timestamp ASC, id ASC
    """
