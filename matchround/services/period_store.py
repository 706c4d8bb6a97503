"""
Period Store

Loads, validates and registers matching periods, and picks the round a
client should currently be looking at.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.errors import InvalidPeriodError, PeriodNotFoundError
from matchround.orm.period import MatchingPeriod
from matchround.services.phase_resolver import Phase, resolve_phase
from matchround.services.transactions import run_in_transaction
from matchround.utils.clock import to_naive_utc

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = (
    "application_start",
    "application_end",
    "matching_run",
    "matching_announce",
    "finish",
)

ACTIVE_PHASES = (Phase.OPEN, Phase.CLOSED_AWAITING_ANNOUNCE, Phase.ANNOUNCED)


@dataclass
class PeriodPair:
    current: Optional[MatchingPeriod] = None
    next: Optional[MatchingPeriod] = None


def validate_period(period: MatchingPeriod) -> None:
    """
    Reject periods the phase resolver cannot reason about.

    Both application timestamps are mandatory. Every timestamp that is set
    must respect start < end <= run <= announce <= finish.
    """
    if period.application_start is None or period.application_end is None:
        raise InvalidPeriodError(
            "application_start and application_end are required",
            period_id=period.id
        )
    if not period.application_start < period.application_end:
        raise InvalidPeriodError(
            "application_end must be later than application_start",
            period_id=period.id
        )

    previous_name, previous = "application_end", period.application_end
    for name in TIMESTAMP_FIELDS[2:]:
        value = getattr(period, name)
        if value is None:
            continue
        if value < previous:
            raise InvalidPeriodError(
                f"{name} must not be earlier than {previous_name}",
                period_id=period.id
            )
        previous_name, previous = name, value


def is_valid_period(period: MatchingPeriod) -> bool:
    try:
        validate_period(period)
    except InvalidPeriodError:
        return False
    return True


def select_current_and_next(
    periods: List[MatchingPeriod],
    now: datetime
) -> PeriodPair:
    """
    Choose the current and next round from valid periods.

    `periods` may be in any order. Selection, newest id first:
    - an active round (open, closed awaiting announce, announced) wins
    - else after a finished round, the earliest upcoming round newer than it,
      falling back to that finished round
    - else the earliest upcoming round
    - else the newest round
    `next` is only reported while current is ANNOUNCED.
    """
    if not periods:
        return PeriodPair()

    ordered = sorted(periods, key=lambda p: p.id, reverse=True)
    phases = {p.id: resolve_phase(p, now) for p in ordered}

    upcoming = [p for p in ordered if phases[p.id] == Phase.PRE_OPEN]
    active = [p for p in ordered if phases[p.id] in ACTIVE_PHASES]
    finished = [p for p in ordered if phases[p.id] == Phase.FINISHED]

    if active:
        current = active[0]
    elif finished and upcoming:
        latest_finished = finished[0]
        newer = [p for p in upcoming if p.id > latest_finished.id]
        current = newer[-1] if newer else latest_finished
    elif upcoming:
        current = upcoming[-1]
    else:
        current = ordered[0]

    next_period = None
    if phases[current.id] == Phase.ANNOUNCED:
        candidates = [p for p in upcoming if p.id > current.id]
        next_period = candidates[-1] if candidates else None

    return PeriodPair(current=current, next=next_period)


class PeriodStore:
    """Read and write access to matching periods."""

    @staticmethod
    async def get_period(db: AsyncSession, period_id: int) -> MatchingPeriod:
        """
        Load a valid period.

        Raises:
            PeriodNotFoundError: no such period
            InvalidPeriodError: the stored row breaks the timestamp invariant
        """
        result = await db.execute(
            select(MatchingPeriod).where(MatchingPeriod.id == period_id)
        )
        period = result.scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(period_id)
        validate_period(period)
        return period

    @staticmethod
    async def get_current_and_next_period(db: AsyncSession, now: datetime) -> PeriodPair:
        """Current and next round; both None when nothing valid is configured."""
        result = await db.execute(select(MatchingPeriod).order_by(MatchingPeriod.id.desc()))
        periods = []
        for period in result.scalars().all():
            if is_valid_period(period):
                periods.append(period)
            else:
                logger.warning(f"Skipping invalid period {period.id}")
        return select_current_and_next(periods, now)

    @staticmethod
    async def register_period(db: AsyncSession, **timestamps: Optional[datetime]) -> MatchingPeriod:
        """Create a period after validating its timestamps."""
        unknown = set(timestamps) - set(TIMESTAMP_FIELDS)
        if unknown:
            raise InvalidPeriodError(f"Unknown period fields: {', '.join(sorted(unknown))}")

        values = {name: to_naive_utc(timestamps.get(name)) for name in TIMESTAMP_FIELDS}
        validate_period(MatchingPeriod(executed=False, **values))

        async def operation() -> MatchingPeriod:
            period = MatchingPeriod(executed=False, **values)
            db.add(period)
            await db.flush()
            return period

        period = await run_in_transaction(db, operation, "register_period")
        await db.refresh(period)

        logger.info(f"Registered matching period {period.id}")
        return period

    @staticmethod
    async def update_period(
        db: AsyncSession,
        period_id: int,
        changes: Dict[str, Any]
    ) -> MatchingPeriod:
        """Change timestamps of a period that has not been executed yet."""
        unknown = set(changes) - set(TIMESTAMP_FIELDS)
        if unknown:
            raise InvalidPeriodError(
                f"Unknown period fields: {', '.join(sorted(unknown))}", period_id=period_id
            )

        async def operation() -> MatchingPeriod:
            result = await db.execute(
                select(MatchingPeriod).where(MatchingPeriod.id == period_id).with_for_update()
            )
            period = result.scalar_one_or_none()
            if period is None:
                raise PeriodNotFoundError(period_id)
            if period.executed:
                raise InvalidPeriodError("Executed periods can no longer be changed", period_id=period_id)

            for name, value in changes.items():
                setattr(period, name, to_naive_utc(value))
            validate_period(period)
            await db.flush()
            return period

        period = await run_in_transaction(db, operation, "update_period")
        await db.refresh(period)
        logger.info(f"Updated matching period {period_id}: {', '.join(sorted(changes))}")
        return period
