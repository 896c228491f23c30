"""
Dead Letter Entry Model - jobs שמיצו את ה-retries, לבדיקה ידנית ו-replay.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Text, Index

from app.db.database import Base, utcnow


class DeadLetterReason(str, enum.Enum):
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    VALIDATION_FAILED = "validation_failed"
    EXCEPTION = "exception"
    TIMEOUT = "timeout"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    UNKNOWN_HOOK = "unknown_hook"


class DeadLetterStatus(str, enum.Enum):
    PENDING = "pending"
    REPLAYED = "replayed"
    DISMISSED = "dismissed"


class DeadLetterEntry(Base):
    """רשומת dead letter"""

    __tablename__ = "dead_letter_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, nullable=True)
    hook_name = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=3)

    reason = Column(SQLEnum(DeadLetterReason), nullable=False)
    error_message = Column(Text, nullable=True)
    error_kind = Column(String(50), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    status = Column(SQLEnum(DeadLetterStatus), nullable=False, default=DeadLetterStatus.PENDING)
    created_at = Column(DateTime, default=utcnow)
    replayed_at = Column(DateTime, nullable=True)
    replayed_job_id = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_dead_letters_status_reason", "status", "reason"),
        Index("ix_dead_letters_created", "created_at"),
    )
