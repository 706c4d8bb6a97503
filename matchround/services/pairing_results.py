"""
Pairing Results

Read side used by the lifecycle engine, plus the write path the pairing
collaborator uses to hand its verdicts over once it has run.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.errors import (
    PairingNotYetRunError, PeriodNotFoundError, ResultAlreadyRecordedError, InvalidMatchResultError
)
from matchround.orm.match_result import MatchResult, MatchOutcome
from matchround.orm.period import MatchingPeriod
from matchround.services.transactions import run_in_transaction
from matchround.utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchVerdict:
    """Pairing verdict for one user in one period."""
    outcome: MatchOutcome
    partner_user_id: Optional[int] = None

    @classmethod
    def unknown(cls) -> "MatchVerdict":
        return cls(outcome=MatchOutcome.UNKNOWN)


async def get_match_result(db: AsyncSession, user_id: int, period_id: int) -> MatchVerdict:
    """
    Verdict for `user_id` in exactly `period_id`.

    Never falls back to any other period's result.

    Raises:
        PeriodNotFoundError: unknown period
        PairingNotYetRunError: the pairing collaborator has not run yet
    """
    period_result = await db.execute(
        select(MatchingPeriod.executed).where(MatchingPeriod.id == period_id)
    )
    executed = period_result.scalar_one_or_none()
    if executed is None:
        raise PeriodNotFoundError(period_id)
    if not executed:
        raise PairingNotYetRunError(period_id)

    result = await db.execute(
        select(MatchResult).where(
            MatchResult.period_id == period_id,
            MatchResult.user_id == user_id
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return MatchVerdict.unknown()

    outcome = MatchOutcome(row.outcome)
    if outcome == MatchOutcome.MATCHED:
        return MatchVerdict(outcome=outcome, partner_user_id=row.partner_user_id)
    return MatchVerdict(outcome=outcome)


async def record_match_results(
    db: AsyncSession,
    period_id: int,
    results: List[Dict[str, Any]],
    now: Optional[datetime] = None
) -> int:
    """
    Store the pairing collaborator's verdicts and mark the period executed.

    Each item is {"user_id", "matched": bool | None, "partner_user_id"?}.
    A final verdict is never overwritten; UNKNOWN rows may be completed.

    Returns:
        Number of users whose verdict was written
    """
    now = now or utc_now()

    async def operation() -> int:
        period_result = await db.execute(
            select(MatchingPeriod).where(MatchingPeriod.id == period_id).with_for_update()
        )
        period = period_result.scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(period_id)

        # Rows touched earlier in this batch are not visible to the query until flushed
        batch: Dict[int, MatchResult] = {}
        for item in results:
            user_id = item["user_id"]
            outcome = _outcome_from_flag(item.get("matched"))
            partner = item.get("partner_user_id") if outcome == MatchOutcome.MATCHED else None
            if outcome == MatchOutcome.MATCHED and partner is None:
                raise InvalidMatchResultError(
                    f"Matched result for user {user_id} in period {period_id} is missing partner_user_id"
                )

            row = batch.get(user_id)
            if row is None:
                existing_result = await db.execute(
                    select(MatchResult).where(
                        MatchResult.period_id == period_id,
                        MatchResult.user_id == user_id
                    )
                )
                row = existing_result.scalar_one_or_none()
            if row is None:
                row = MatchResult(period_id=period_id, user_id=user_id)
                db.add(row)
            elif row.outcome != MatchOutcome.UNKNOWN.value:
                raise ResultAlreadyRecordedError(period_id, user_id)

            row.outcome = outcome.value
            row.partner_user_id = partner
            row.recorded_at = now
            batch[user_id] = row

        period.executed = True
        await db.flush()
        return len(batch)

    written = await run_in_transaction(db, operation, "record_match_results")
    logger.info(f"Recorded {written} match results for period {period_id}")
    return written

def _outcome_from_flag(flag: Optional[bool]) -> MatchOutcome:
    if flag is None:
        return MatchOutcome.UNKNOWN
    return MatchOutcome.MATCHED if flag else MatchOutcome.UNMATCHED
