"""
Saga Execution Model - מצב ויומן צעדים של saga.

steps: רשימה מסודרת של {name, status, result | error, attempts}.
ברגע שהסטטוס סופי (completed / failed / compensated) הרשומה לא משתנה.
"""
import enum

from sqlalchemy import Column, String, DateTime, Boolean, Enum as SQLEnum, JSON, Text, Index

from app.db.database import Base, utcnow


class SagaStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class SagaExecution(Base):
    __tablename__ = "saga_executions"

    saga_id = Column(String(100), primary_key=True)
    saga_type = Column(String(50), nullable=False)
    status = Column(SQLEnum(SagaStatus), nullable=False, default=SagaStatus.PENDING)
    context = Column(JSON, nullable=False, default=dict)
    steps = Column(JSON, nullable=False, default=list)
    compensated = Column(Boolean, nullable=False, default=False)
    failed_step = Column(String(100), nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_saga_executions_status_updated", "status", "updated_at"),
    )
