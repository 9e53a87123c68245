"""CreditTransaction model: immutable ledger entries."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CREDIT_KINDS = ("purchase", "bonus", "refund", "consumption", "adjustment")
GRANT_KINDS = ("purchase", "bonus", "refund", "adjustment")


class CreditTransaction(Base):
    """Signed balance movement; positive credits, negative consumption."""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    description = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=True)
    reference = Column(String, nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_credit_transactions_idempotency"),
        CheckConstraint(
            "kind IN ('purchase', 'bonus', 'refund', 'consumption', 'adjustment')",
            name="ck_credit_transactions_kind",
        ),
        CheckConstraint(
            "(kind = 'consumption' AND amount < 0) OR (kind != 'consumption' AND amount > 0)",
            name="ck_credit_transactions_amount_sign",
        ),
        CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_after"),
        Index("ix_credit_transactions_account_kind", "account_id", "kind"),
    )
