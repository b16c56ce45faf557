"""
Database module.
Contains database connection, models, and repository implementations.
"""

from delayed_jobs.db.connection import (
    close_engine,
    create_engine,
    create_session_factory,
    session_scope,
)
from delayed_jobs.db.models import Base, DelayedJob
from delayed_jobs.db.repository import JobRepository

__all__ = [
    "create_engine",
    "create_session_factory",
    "close_engine",
    "session_scope",
    "Base",
    "DelayedJob",
    "JobRepository",
]
