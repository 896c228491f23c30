"""
Job Model - פריט עבודה בתור העדיפויות.

attempt_count <= max_attempts תמיד. job במצב dead לא משתנה יותר -
replay מה-dead letter queue יוצר job חדש.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index

from app.db.database import Base, utcnow


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"


class Job(Base):
    """Queued unit of work with retry tracking"""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hook_name = Column(String(100), nullable=False)
    # מעטפת גרסה 2: {"_version": 2, "_meta": {...}, "args": {...}}
    payload = Column(JSON, nullable=False)
    # sha256 של args בלבד - לזיהוי is_scheduled בלי תלות ב-_meta
    payload_hash = Column(String(64), nullable=False)

    priority = Column(Integer, nullable=False, default=3)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    run_after = Column(DateTime, nullable=False, default=utcnow)

    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING)
    locked_by = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_jobs_due", "status", "priority", "run_after"),
        Index("ix_jobs_hook_hash", "hook_name", "payload_hash"),
    )
