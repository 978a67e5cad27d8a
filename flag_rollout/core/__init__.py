"""
Core infrastructure for the flag rollout service.

Provides:
- Configuration management via pydantic-settings
- Async PostgreSQL connectivity via asyncpg
- FastAPI dependency injection helpers

Usage:
    from flag_rollout.core import get_settings, init_db, close_db
"""

from flag_rollout.core.config import Settings, get_settings
from flag_rollout.core.database import init_db, close_db, get_db_pool


__all__ = [
    'Settings',
    'get_settings',
    'init_db',
    'close_db',
    'get_db_pool',
]
