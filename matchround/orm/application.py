"""
Matching Application Model

A user's apply/cancel record for one period. Rows are never deleted:
cancelled rows stay behind for the reapplication cooldown and for audit.
"""
from sqlalchemy import (
    Column, Integer, DateTime, Boolean, ForeignKey, Index, CheckConstraint, text
)

from matchround.orm.base import BaseModel
from matchround.utils.clock import isoformat_or_none


class MatchingApplication(BaseModel):
    """
    One participation record.

    At most one non-cancelled row may exist per (user_id, period_id); the
    partial unique index enforces this in storage as well as in the ledger.
    """
    __tablename__ = "matching_applications"

    user_id = Column(Integer, nullable=False, index=True)
    period_id = Column(
        Integer,
        ForeignKey("matching_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    applied = Column(Boolean, nullable=False, default=True)
    applied_at = Column(DateTime, nullable=False)
    cancelled = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_active_application",
            "user_id",
            "period_id",
            unique=True,
            sqlite_where=text("cancelled = 0"),
            postgresql_where=text("cancelled = false"),
        ),
        Index("idx_application_user_period", "user_id", "period_id", "applied_at"),
        CheckConstraint(
            "NOT cancelled OR cancelled_at IS NOT NULL",
            name="ck_cancelled_has_timestamp"
        ),
    )

    @property
    def is_active(self) -> bool:
        return bool(self.applied) and not self.cancelled

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "period_id": self.period_id,
            "applied": bool(self.applied),
            "applied_at": isoformat_or_none(self.applied_at),
            "cancelled": bool(self.cancelled),
            "cancelled_at": isoformat_or_none(self.cancelled_at),
        }
