"""
Database models for the sync task queue.

Usage:
    from fantasy_sync.models import SyncTask, SyncTaskAttempt
"""
from fantasy_sync.models.models import Base, SyncTask, SyncTaskAttempt

__all__ = [
    "Base",
    "SyncTask",
    "SyncTaskAttempt",
]
