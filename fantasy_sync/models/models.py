"""
Database models for the durable sync task queue.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, Index, JSON
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


class SyncTask(Base):
    """One schedulable, retryable, deduplicated unit of sync work.

    ``active_key`` mirrors ``dedup_key`` while the task is waiting or active
    and is cleared when the task reaches a terminal state. The unique index
    on it is what makes "at most one in-flight task per dedup key" atomic:
    two concurrent enqueues for the same identity cannot both insert.
    """
    __tablename__ = "sync_tasks"

    id = Column(String(36), primary_key=True)
    task_type = Column(String(64), nullable=False, index=True)
    subject_ref = Column(String(64), nullable=True, index=True)  # round / tournament / entry id
    source = Column(String(16), nullable=False)  # cron, manual, api, cascade
    dedup_key = Column(String(255), nullable=False, index=True)
    active_key = Column(String(255), nullable=True, unique=True)
    status = Column(String(16), nullable=False, index=True)  # waiting, active, completed, failed
    priority = Column(Integer, nullable=False, default=5)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_seconds = Column(Integer, nullable=False, default=60)
    payload = Column(JSON, nullable=True)
    enqueued_at = Column(DateTime, nullable=False)
    available_at = Column(DateTime, nullable=False, index=True)  # delay-until / retry-at
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True, index=True)
    worker_id = Column(String(64), nullable=True)
    last_error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    attempts = relationship(
        "SyncTaskAttempt",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="SyncTaskAttempt.attempt_number",
    )

    __table_args__ = (
        Index('ix_sync_tasks_claim', 'status', 'available_at', 'priority'),
        Index('ix_sync_tasks_type_subject', 'task_type', 'subject_ref'),
    )


class SyncTaskAttempt(Base):
    """Audit row for every executed attempt of a task."""
    __tablename__ = "sync_task_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(36), ForeignKey("sync_tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False)  # success, failure
    error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    worker_id = Column(String(64), nullable=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=False)

    task = relationship("SyncTask", back_populates="attempts")
