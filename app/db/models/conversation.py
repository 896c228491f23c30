"""
Conversation + Message Models - שיחת WhatsApp והודעות נכנסות/יוצאות
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Index

from app.db.database import Base, utcnow


class Conversation(Base):
    """שיחה לכל לקוח - מצב ה-state machine וה-context שלה"""

    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    customer_phone = Column(String(32), unique=True, nullable=False)
    state = Column(String(50), nullable=False, default="idle")
    context = Column(JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_message_at = Column(DateTime, default=utcnow)


class Message(Base):
    """הודעה בודדת - wa_message_id ייחודי (הגנה שנייה מכפילויות מעבר ל-claim)"""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    wa_message_id = Column(String(200), unique=True, nullable=False)
    direction = Column(String(10), nullable=False, default="inbound")  # inbound / outbound
    message_type = Column(String(30), nullable=False, default="text")
    content = Column(JSON, default=dict)
    intent = Column(String(50), nullable=True)

    # סטטוס מסירה של הודעות יוצאות (sent/delivered/read/failed)
    status = Column(String(20), nullable=True)
    status_rank = Column(Integer, nullable=False, default=0)
    error_details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )
