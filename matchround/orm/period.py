"""
Matching Period Model

One round of the recurring matching event, governed by five timestamps.
"""
from sqlalchemy import Column, DateTime, Boolean, Index

from matchround.orm.base import BaseModel
from matchround.utils.clock import isoformat_or_none


class MatchingPeriod(BaseModel):
    """
    A matching round.

    Ordering invariant when all timestamps are set:
        application_start < application_end <= matching_run
            <= matching_announce <= finish

    `matching_run` and `matching_announce` may be unset while the round is
    still being configured. A row missing either application timestamp is
    invalid and is rejected on read.

    `executed` flips to true once the pairing collaborator has written its
    results; the row is frozen from then on.
    """
    __tablename__ = "matching_periods"

    application_start = Column(DateTime, nullable=True)
    application_end = Column(DateTime, nullable=True)
    matching_run = Column(DateTime, nullable=True)
    matching_announce = Column(DateTime, nullable=True)
    finish = Column(DateTime, nullable=True)
    executed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_period_application_start", "application_start"),
    )

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "application_start": isoformat_or_none(self.application_start),
            "application_end": isoformat_or_none(self.application_end),
            "matching_run": isoformat_or_none(self.matching_run),
            "matching_announce": isoformat_or_none(self.matching_announce),
            "finish": isoformat_or_none(self.finish),
            "executed": bool(self.executed),
        }

    def __repr__(self):
        return f"<MatchingPeriod(id={self.id}, executed={self.executed})>"
