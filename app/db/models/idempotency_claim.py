"""
Idempotency Claim Model - ledger של אירועים שנתפסו לעיבוד.

(idempotency_key, scope) ייחודי - ה-INSERT על האילוץ הוא נקודת המניעה ההדדית
היחידה במערכת. רשומה ב-claimed לא נמחקת אלא ב-release (כשלון) כדי שאפשר
יהיה לזהות עיבוד שנמצא באמצע.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Index, UniqueConstraint

from app.db.database import Base, utcnow


class IdempotencyScope(str, enum.Enum):
    WEBHOOK = "webhook"
    NOTIFICATION = "notification"
    PAYMENT = "payment"
    ORDER = "order"
    BROADCAST = "broadcast"
    SYNC = "sync"


class ClaimStatus(str, enum.Enum):
    CLAIMED = "claimed"
    COMPLETED = "completed"


class IdempotencyClaim(Base):
    """רשומת claim בודדת"""

    __tablename__ = "idempotency_claims"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(255), nullable=False)
    scope = Column(SQLEnum(IdempotencyScope), nullable=False)
    status = Column(SQLEnum(ClaimStatus), nullable=False, default=ClaimStatus.CLAIMED)
    # מזהה בעלים - ה-job שה-claim נתפס עבורו (claim חוזר של אותו בעלים מצליח)
    owner_token = Column(String(64), nullable=True)

    claimed_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", "scope", name="uq_idempotency_key_scope"),
        Index("ix_idempotency_claims_expires", "expires_at"),
        Index("ix_idempotency_claims_scope_status", "scope", "status"),
    )
