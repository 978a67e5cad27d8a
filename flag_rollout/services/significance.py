"""
Significance Evaluator.

Judges whether an A/B test has enough data to be trusted, which variant leads
and what the operator should do next. This is a deliberately small heuristic,
not a statistical test:

1. Significant when the variants together have at least
   SIGNIFICANCE_MIN_TOTAL_USERS users.
2. Confidence per variant is a step function of its user count:
   < 30 -> 0.0, < 100 -> 0.8, < 500 -> 0.9, otherwise 0.95.
3. The winner has the strictly highest conversion rate. On a tie the variant
   seen first keeps the lead.
4. Recommended action:
   - not significant: `continue` when every variant has fewer than
     EXTEND_MIN_USERS users, otherwise `extend`
   - significant: `declare_winner` when some variant reaches
     DECLARE_WINNER_CONFIDENCE, otherwise `continue`

Every threshold is a module constant and can be overridden per evaluator.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from flag_rollout.models import (
    ABTestResults,
    ConversionMetrics,
    DateRange,
    RecommendedAction,
    VariantResult,
)
from flag_rollout.services.metrics import MetricsAggregator


logger = logging.getLogger(__name__)


# =============================================================================
# Thresholds
# =============================================================================

SIGNIFICANCE_MIN_TOTAL_USERS: int = 100

# (exclusive upper bound on users, confidence), checked in order
CONFIDENCE_STEPS: Tuple[Tuple[int, float], ...] = (
    (30, 0.0),
    (100, 0.8),
    (500, 0.9),
)
MAX_CONFIDENCE: float = 0.95

DECLARE_WINNER_CONFIDENCE: float = 0.95
EXTEND_MIN_USERS: int = 50


# =============================================================================
# Pure helpers
# =============================================================================


def calculate_confidence(
    users: int,
    steps: Sequence[Tuple[int, float]] = CONFIDENCE_STEPS,
    max_confidence: float = MAX_CONFIDENCE,
) -> float:
    for upper_bound, confidence in steps:
        if users < upper_bound:
            return confidence
    return max_confidence


def is_significant(
    metrics: Sequence[ConversionMetrics],
    min_total_users: int = SIGNIFICANCE_MIN_TOTAL_USERS,
) -> bool:
    return sum(m.total_users for m in metrics) >= min_total_users


def pick_winner(metrics: Sequence[ConversionMetrics]) -> Optional[str]:
    """Variant with the strictly highest conversion rate; first one wins ties."""
    winner: Optional[ConversionMetrics] = None
    for m in metrics:
        if winner is None or m.conversion_rate > winner.conversion_rate:
            winner = m
    return winner.variant if winner is not None else None


def recommend_action(
    metrics: Sequence[ConversionMetrics],
    confidences: Sequence[float],
    significant: bool,
    declare_winner_confidence: float = DECLARE_WINNER_CONFIDENCE,
    extend_min_users: int = EXTEND_MIN_USERS,
) -> RecommendedAction:
    if not significant:
        if all(m.total_users < extend_min_users for m in metrics):
            return RecommendedAction.CONTINUE
        return RecommendedAction.EXTEND

    if any(c >= declare_winner_confidence for c in confidences):
        return RecommendedAction.DECLARE_WINNER
    return RecommendedAction.CONTINUE


def build_test_results(
    flag_key: str,
    metrics: Sequence[ConversionMetrics],
    date_range: Optional[DateRange] = None,
    min_total_users: int = SIGNIFICANCE_MIN_TOTAL_USERS,
    confidence_steps: Sequence[Tuple[int, float]] = CONFIDENCE_STEPS,
    max_confidence: float = MAX_CONFIDENCE,
    declare_winner_confidence: float = DECLARE_WINNER_CONFIDENCE,
    extend_min_users: int = EXTEND_MIN_USERS,
) -> Optional[ABTestResults]:
    """
    Turn per-variant metrics into an A/B test judgment.

    Returns:
        ABTestResults, or None when `metrics` is empty.
    """
    if not metrics:
        return None

    significant = is_significant(metrics, min_total_users)
    confidences = [
        calculate_confidence(m.total_users, confidence_steps, max_confidence)
        for m in metrics
    ]
    winner = pick_winner(metrics)

    variants: List[VariantResult] = [
        VariantResult(
            name=m.variant,
            users=m.total_users,
            conversions=m.conversions,
            conversion_rate=m.conversion_rate,
            confidence=confidence,
            is_winner=(m.variant == winner),
        )
        for m, confidence in zip(metrics, confidences)
    ]

    return ABTestResults(
        flag_key=flag_key,
        start_date=date_range.start if date_range else None,
        end_date=date_range.end if date_range else None,
        variants=variants,
        statistical_significance=significant,
        recommended_action=recommend_action(
            metrics,
            confidences,
            significant,
            declare_winner_confidence,
            extend_min_users,
        ),
    )


# =============================================================================
# Evaluator
# =============================================================================


class SignificanceEvaluator:
    """Runs the significance heuristic over metrics from the aggregator."""

    def __init__(
        self,
        aggregator: MetricsAggregator,
        min_total_users: int = SIGNIFICANCE_MIN_TOTAL_USERS,
        confidence_steps: Sequence[Tuple[int, float]] = CONFIDENCE_STEPS,
        max_confidence: float = MAX_CONFIDENCE,
        declare_winner_confidence: float = DECLARE_WINNER_CONFIDENCE,
        extend_min_users: int = EXTEND_MIN_USERS,
    ) -> None:
        self._aggregator = aggregator
        self.min_total_users = min_total_users
        self.confidence_steps = tuple(confidence_steps)
        self.max_confidence = max_confidence
        self.declare_winner_confidence = declare_winner_confidence
        self.extend_min_users = extend_min_users

    def evaluate(
        self,
        flag_key: str,
        metrics: Sequence[ConversionMetrics],
        date_range: Optional[DateRange] = None,
    ) -> Optional[ABTestResults]:
        return build_test_results(
            flag_key,
            metrics,
            date_range,
            min_total_users=self.min_total_users,
            confidence_steps=self.confidence_steps,
            max_confidence=self.max_confidence,
            declare_winner_confidence=self.declare_winner_confidence,
            extend_min_users=self.extend_min_users,
        )

    async def analyze(
        self,
        flag_key: str,
        date_range: Optional[DateRange] = None,
    ) -> Optional[ABTestResults]:
        """Analyze a flag's A/B test over `date_range` (all time when omitted)."""
        date_range = date_range or DateRange.all_time()
        metrics = await self._aggregator.compute_metrics(flag_key, date_range)
        results = self.evaluate(flag_key, metrics, date_range)

        if results is None:
            logger.info(f"No events for {flag_key}, nothing to analyze")
        else:
            winner = results.winner
            logger.info(
                f"Analyzed {flag_key}: significant={results.statistical_significance}, "
                f"winner={winner.name if winner else None}, "
                f"action={results.recommended_action.value}"
            )
        return results
