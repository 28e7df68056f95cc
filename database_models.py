from sqlalchemy import Column, Integer, String, DateTime, JSON
from datetime import datetime, timezone
from database import Base

from models.subscription import SubscriptionStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Paywall user record, one per lower-cased email.
    Status is stored as its string value and decoded at this boundary.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String, nullable=True, index=True)
    subscription_id = Column(String, nullable=True)
    plan = Column(String, nullable=True)
    status = Column(String, nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    custom_fields = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    @property
    def subscription_status(self):
        return SubscriptionStatus.decode(self.status)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "plan": self.plan,
            "status": self.status,
            "customer_id": self.stripe_customer_id,
            "subscription_id": self.subscription_id,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "custom_fields": self.custom_fields or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
