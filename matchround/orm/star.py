"""
Star Ledger Models

Per-user star balance plus an append-only transaction log that records the
provenance of every debit and credit.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, CheckConstraint, Index
)

from matchround.orm.base import Base, BaseModel
from matchround.utils.clock import isoformat_or_none, utc_now


class StarWallet(Base):
    """Current star balance of a user. Never negative."""
    __tablename__ = "star_wallets"

    user_id = Column(Integer, primary_key=True, autoincrement=False)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_star_wallet_non_negative"),
    )


class StarTransaction(BaseModel):
    """
    One balance change.

    Attributes:
        amount: signed delta (negative for debits)
        reason: provenance label, e.g. "apply:12" or "refund:340"
        idempotency_key: unique key for credits; a repeated key is a no-op
        application_id: application that caused the change, if any
        balance_after: wallet balance once the change was applied
    """
    __tablename__ = "star_transactions"

    user_id = Column(Integer, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    # Room for "grant:{user_id}:" in front of a 100 character reason
    reason = Column(String(255), nullable=False)
    idempotency_key = Column(String(255), nullable=True, unique=True)
    application_id = Column(
        Integer,
        ForeignKey("matching_applications.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    balance_after = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_star_tx_user_created", "user_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "amount": self.amount,
            "reason": self.reason,
            "application_id": self.application_id,
            "balance_after": self.balance_after,
            "created_at": isoformat_or_none(self.created_at),
        }
