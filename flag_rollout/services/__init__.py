"""
Rollout Services

Services:
- event_recorder: buffered, batched event ingestion
- metrics: per-variant conversion metrics (pandas)
- significance: significance heuristic, winner and recommended action
- rollout_controller: gradual rollout state machine and evaluation tick
- storage: asyncpg adapters for the storage and distribution ports
- rollout_service: facade bundling the services above

The abstract ports the services depend on live in `ports`.
"""

# =============================================================================
# Ports
# =============================================================================

from flag_rollout.services.ports import (
    DistributionPort,
    FeedbackPort,
    NoFeedback,
    NotificationPort,
    StoragePort,
)

# =============================================================================
# Event Recorder
# =============================================================================

from flag_rollout.services.event_recorder import (
    EventRecorder,
    complete_event,
    generate_session_id,
)

# =============================================================================
# Metrics and Significance
# =============================================================================

from flag_rollout.services.metrics import (
    MetricsAggregator,
    calculate_conversion_metrics,
)
from flag_rollout.services.significance import (
    SignificanceEvaluator,
    SIGNIFICANCE_MIN_TOTAL_USERS,
    CONFIDENCE_STEPS,
    DECLARE_WINNER_CONFIDENCE,
    EXTEND_MIN_USERS,
    calculate_confidence,
    is_significant,
    pick_winner,
    recommend_action,
    build_test_results,
)

# =============================================================================
# Rollout Controller
# =============================================================================

from flag_rollout.services.rollout_controller import (
    RolloutController,
    RolloutError,
    RolloutConfigError,
    RolloutNotFoundError,
    RolloutStateError,
    RolloutPersistenceError,
    validate_rollout_config,
    calculate_next_increment,
    find_emergency_stop_reason,
    find_increment_blocker,
)

# =============================================================================
# Facade
# =============================================================================

from flag_rollout.services.rollout_service import (
    RolloutService,
    build_rollout_service,
)


__all__ = [
    # Ports
    'DistributionPort',
    'FeedbackPort',
    'NoFeedback',
    'NotificationPort',
    'StoragePort',
    # Event Recorder
    'EventRecorder',
    'complete_event',
    'generate_session_id',
    # Metrics and Significance
    'MetricsAggregator',
    'calculate_conversion_metrics',
    'SignificanceEvaluator',
    'SIGNIFICANCE_MIN_TOTAL_USERS',
    'CONFIDENCE_STEPS',
    'DECLARE_WINNER_CONFIDENCE',
    'EXTEND_MIN_USERS',
    'calculate_confidence',
    'is_significant',
    'pick_winner',
    'recommend_action',
    'build_test_results',
    # Rollout Controller
    'RolloutController',
    'RolloutError',
    'RolloutConfigError',
    'RolloutNotFoundError',
    'RolloutStateError',
    'RolloutPersistenceError',
    'validate_rollout_config',
    'calculate_next_increment',
    'find_emergency_stop_reason',
    'find_increment_blocker',
    # Facade
    'RolloutService',
    'build_rollout_service',
]
