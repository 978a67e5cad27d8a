"""
Background jobs and operator notifications.

- scheduler: PeriodicJob and create_scheduler, the APScheduler interval jobs
  behind the event flush timer and the rollout evaluation tick
- notifications: SlackNotifier (slack-sdk webhook) and LoggingNotifier

Environment Requirements:
- SLACK_WEBHOOK_URL: Slack incoming webhook URL, e.g.
  https://hooks.slack.com/services/xxx/yyy/zzz
  Without it notifications are only logged.
"""

from flag_rollout.jobs.scheduler import PeriodicJob, create_scheduler
from flag_rollout.jobs.notifications import (
    LoggingNotifier,
    SlackNotifier,
    format_notification_blocks,
)


__all__ = [
    'PeriodicJob',
    'create_scheduler',
    'LoggingNotifier',
    'SlackNotifier',
    'format_notification_blocks',
]
