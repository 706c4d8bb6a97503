"""
Match Result Model

The pairing collaborator's verdict for one user in one period.
Read-only to the lifecycle engine.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, CheckConstraint

from matchround.orm.base import BaseModel
from matchround.utils.clock import isoformat_or_none


class MatchOutcome(str, enum.Enum):
    """Tri-state match verdict. UNKNOWN is a distinct state, never a falsy MATCHED."""
    UNKNOWN = "unknown"
    MATCHED = "matched"
    UNMATCHED = "unmatched"


class MatchResult(BaseModel):
    """
    Verdict row written by the pairing collaborator.

    Once `outcome` is MATCHED or UNMATCHED it is immutable for the period.
    `partner_user_id` is present iff the outcome is MATCHED.
    """
    __tablename__ = "match_results"

    period_id = Column(
        Integer,
        ForeignKey("matching_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id = Column(Integer, nullable=False, index=True)
    outcome = Column(String(20), nullable=False, default=MatchOutcome.UNKNOWN.value)
    partner_user_id = Column(Integer, nullable=True)
    recorded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("period_id", "user_id", name="uq_match_result_period_user"),
        CheckConstraint(
            "outcome IN ('unknown', 'matched', 'unmatched')",
            name="ck_match_result_outcome_valid"
        ),
        CheckConstraint(
            "(outcome = 'matched') = (partner_user_id IS NOT NULL)",
            name="ck_match_result_partner_iff_matched"
        ),
    )

    def to_dict(self):
        return {
            "period_id": self.period_id,
            "user_id": self.user_id,
            "outcome": self.outcome,
            "partner_user_id": self.partner_user_id,
            "recorded_at": isoformat_or_none(self.recorded_at),
        }
