"""
Parameterized SQL for gradual rollout persistence.

Tables:
    gradual_rollout_configs: the operator-authored config, written once per rollout
    gradual_rollout_status: the mutable status, upserted on every transition
    flag_variant_distribution: live percentage per (flag_key, variant), read by
        the flag-serving layer

Status writes are idempotent upserts keyed on the rollout id, so replaying a
write after a crash is harmless.
"""


# =============================================================================
# CONSTANTS
# =============================================================================

CONFIGS_TABLE: str = "gradual_rollout_configs"
STATUS_TABLE: str = "gradual_rollout_status"
DISTRIBUTION_TABLE: str = "flag_variant_distribution"


# =============================================================================
# DDL
# =============================================================================

def get_create_rollout_tables_query() -> str:
    return f"""
    CREATE TABLE IF NOT EXISTS {CONFIGS_TABLE} (
        id TEXT PRIMARY KEY,
        flag_key TEXT NOT NULL,
        target_variant TEXT NOT NULL,
        config_data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS {STATUS_TABLE} (
        id TEXT PRIMARY KEY REFERENCES {CONFIGS_TABLE} (id),
        flag_key TEXT NOT NULL,
        target_variant TEXT NOT NULL,
        current_percentage DOUBLE PRECISION NOT NULL,
        target_percentage DOUBLE PRECISION NOT NULL,
        status TEXT NOT NULL,
        current_stats JSONB NOT NULL,
        increment_history JSONB NOT NULL,
        next_scheduled_increment JSONB,
        failure_reason TEXT,
        last_updated TIMESTAMPTZ NOT NULL
    );

    CREATE TABLE IF NOT EXISTS {DISTRIBUTION_TABLE} (
        flag_key TEXT NOT NULL,
        variant TEXT NOT NULL,
        percentage DOUBLE PRECISION NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (flag_key, variant)
    );
    """


# =============================================================================
# CONFIGS
# =============================================================================

def get_insert_config_query() -> str:
    """
    Parameters:
        $1: rollout id, $2: flag_key, $3: target_variant, $4: config JSON text
    """
    return f"""
    INSERT INTO {CONFIGS_TABLE} (id, flag_key, target_variant, config_data, created_at)
    VALUES ($1, $2, $3, $4::jsonb, NOW())
    ON CONFLICT (id) DO NOTHING
    """


# =============================================================================
# STATUS
# =============================================================================

def get_upsert_status_query() -> str:
    """
    Parameters:
        $1: id, $2: flag_key, $3: target_variant, $4: current_percentage,
        $5: target_percentage, $6: status, $7: current_stats JSON,
        $8: increment_history JSON, $9: next_scheduled_increment JSON or NULL,
        $10: failure_reason, $11: last_updated
    """
    return f"""
    INSERT INTO {STATUS_TABLE} (
        id, flag_key, target_variant, current_percentage, target_percentage,
        status, current_stats, increment_history, next_scheduled_increment,
        failure_reason, last_updated
    ) VALUES (
        $1, $2, $3, $4, $5,
        $6, $7::jsonb, $8::jsonb, $9::jsonb,
        $10, $11
    )
    ON CONFLICT (id)
    DO UPDATE SET
        current_percentage = EXCLUDED.current_percentage,
        target_percentage = EXCLUDED.target_percentage,
        status = EXCLUDED.status,
        current_stats = EXCLUDED.current_stats,
        increment_history = EXCLUDED.increment_history,
        next_scheduled_increment = EXCLUDED.next_scheduled_increment,
        failure_reason = EXCLUDED.failure_reason,
        last_updated = EXCLUDED.last_updated
    """


def get_load_rollouts_query() -> str:
    """Every rollout with its config, oldest first."""
    return f"""
    SELECT
        s.id,
        s.flag_key,
        s.target_variant,
        s.current_percentage,
        s.target_percentage,
        s.status,
        s.current_stats,
        s.increment_history,
        s.next_scheduled_increment,
        s.failure_reason,
        s.last_updated,
        c.config_data
    FROM {STATUS_TABLE} s
    JOIN {CONFIGS_TABLE} c ON c.id = s.id
    ORDER BY c.created_at ASC
    """


# =============================================================================
# DISTRIBUTION
# =============================================================================

def get_upsert_distribution_query() -> str:
    """
    Parameters:
        $1: flag_key, $2: variant, $3: percentage
    """
    return f"""
    INSERT INTO {DISTRIBUTION_TABLE} (flag_key, variant, percentage, updated_at)
    VALUES ($1, $2, $3, NOW())
    ON CONFLICT (flag_key, variant)
    DO UPDATE SET
        percentage = EXCLUDED.percentage,
        updated_at = NOW()
    """


def get_distribution_query() -> str:
    """Parameters: $1: flag_key"""
    return f"""
    SELECT variant, percentage
    FROM {DISTRIBUTION_TABLE}
    WHERE flag_key = $1
    ORDER BY variant ASC
    """
