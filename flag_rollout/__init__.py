"""
Flag Rollout Service Package.

Records feature-flag experiment events, turns them into per-variant conversion
metrics, judges A/B test significance and drives gradual rollouts with
automatic rollback on quality regressions.

Subpackages:
    - api: FastAPI route handlers
    - core: Configuration, database, and dependencies
    - models: Pydantic schemas and enums
    - services: Event Recorder, Metrics Aggregator, Significance Evaluator,
      Rollout Controller and storage adapters
    - jobs: Background scheduling and operator notifications
    - sql: Parameterized SQL queries
"""

__version__ = "1.0.0"
