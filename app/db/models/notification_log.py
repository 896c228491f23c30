"""
Notification Log Model - היסטוריית ניסיונות שליחת התראות הזמנה
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Index

from app.db.database import Base, utcnow


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, nullable=False)
    customer_phone = Column(String(32), nullable=False)
    notification_type = Column(String(50), nullable=False)
    template_name = Column(String(100), nullable=False)
    # sent / failed / skipped_opt_out / skipped_quiet_hours
    status = Column(String(30), nullable=False)
    wa_message_id = Column(String(200), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_notification_logs_order", "order_id", "notification_type"),
    )
