'''
Flag Rollout Test Suite

Test Modules:
-------------
- test_event_recorder.py: event completion, batched flushing, buffer cap
- test_metrics.py: per-variant conversion metrics from raw events
- test_significance.py: confidence steps, winner selection, recommended action
- test_rollout_controller.py: rollout state machine, gates, emergency stop,
  persistence failures and restore
- test_scheduler.py: PeriodicJob interval, trigger, shared scheduler and graceful stop
- test_storage.py: PostgreSQL adapters against a mocked asyncpg pool
- test_notifications.py: Slack webhook and logging notifiers
- test_api.py: FastAPI endpoints through TestClient

Running Tests:
--------------
    pip install -e .[test]
    pytest -v

Configuration:
--------------
See conftest.py for shared fixtures and in-memory port fakes.
'''

__all__ = []
