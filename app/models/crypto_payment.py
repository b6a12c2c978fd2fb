"""
CryptoScope — Crypto Payment Model
One NOWPayments invoice. Crypto has no native recurrence, so each row buys
a fixed 30 or 365 day period outright.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from app.core.database import Base


class CryptoPayment(Base):
    __tablename__ = "crypto_payments"

    id = Column(String(191), primary_key=True)
    user_id = Column(String(191), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    nowpayments_invoice_id = Column(String(191), unique=True, nullable=False, index=True)
    nowpayments_payment_id = Column(String(191), nullable=True)  # assigned once the user pays
    order_id = Column(String(255), nullable=False, index=True)
    plan = Column(String(20), nullable=False)
    billing_period = Column(String(20), nullable=False)  # monthly, annual
    currency = Column(String(10), nullable=False)  # BTC, SOL
    price_usd = Column(Integer, nullable=False)  # cents, fixed at invoice creation
    crypto_amount = Column(String(50), nullable=True)  # actually paid
    status = Column(String(20), default="pending", nullable=False, index=True)
    invoice_url = Column(Text, nullable=True)
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="crypto_payments")

    def __repr__(self):
        return f"<CryptoPayment(id='{self.id}', plan='{self.plan}', status='{self.status}')>"
