"""PendingClaim model for single-use OAuth handoff tokens."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CLAIM_STATUSES = ("pending", "claimed", "expired")
FLOW_TYPES = ("app_first", "marketplace_first")


class PendingClaim(Base):
    """Short-lived claim binding an external callback to the initiating account."""

    __tablename__ = "pending_claims"

    token = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    flow_type = Column(String, nullable=False, default="app_first")
    flow_data_encrypted = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="pending_claims")

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'claimed', 'expired')", name="ck_pending_claims_status"),
        CheckConstraint("flow_type IN ('app_first', 'marketplace_first')", name="ck_pending_claims_flow_type"),
        CheckConstraint(
            "(status = 'claimed' AND claimed_at IS NOT NULL) OR (status != 'claimed' AND claimed_at IS NULL)",
            name="ck_pending_claims_claimed_at",
        ),
        Index("ix_pending_claims_status_expires", "status", "expires_at"),
        Index("ix_pending_claims_provider", "provider"),
    )
