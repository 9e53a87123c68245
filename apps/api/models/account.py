"""Account model holding the authoritative credit balance."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Account(Base):
    """Ledger account keyed by the identity-provider user id."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    balance = Column(Integer, nullable=False, default=0)
    total_consumed = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    transactions = relationship("CreditTransaction", back_populates="account")
    pending_claims = relationship("PendingClaim", back_populates="account")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("total_consumed >= 0", name="ck_accounts_total_consumed_non_negative"),
    )
