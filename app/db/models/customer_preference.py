"""
Customer Preference Model - הסכמה להתראות ואזור זמן
"""
from sqlalchemy import Column, String, Boolean, DateTime

from app.db.database import Base, utcnow


class CustomerPreference(Base):
    __tablename__ = "customer_preferences"

    customer_phone = Column(String(32), primary_key=True)
    notifications_opt_out = Column(Boolean, nullable=False, default=False)
    # IANA, לדוגמה "America/Sao_Paulo" - שעות שקטות מחושבות לפיו
    timezone = Column(String(64), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
