"""
CryptoScope — Subscription Model
Unified entitlement record for both payment rails. Card-rail rows are keyed
by the Stripe subscription id, crypto-rail rows by `crypto_<payment_id>`.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship

from app.core.database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(191), primary_key=True)
    user_id = Column(String(191), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # active, past_due, canceled, trialing, inactive
    plan = Column(String(20), nullable=False)  # free, pro, agency
    payment_method = Column(String(20), default="stripe", nullable=False)  # stripe, crypto
    stripe_price_id = Column(String(255), nullable=True)
    pay_currency = Column(String(10), nullable=True)  # BTC, SOL
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="subscriptions")

    def __repr__(self):
        return f"<Subscription(id='{self.id}', plan='{self.plan}', status='{self.status}')>"
