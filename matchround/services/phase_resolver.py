"""
Period Phase Resolver

Pure mapping of a period's timestamps and an instant to the period phase.
No I/O, no exceptions for valid periods.
"""
import enum
from datetime import datetime
from typing import Dict

from matchround.orm.period import MatchingPeriod


class Phase(str, enum.Enum):
    """Phases of a matching period, in chronological order."""
    PRE_OPEN = "PRE_OPEN"
    OPEN = "OPEN"
    CLOSED_AWAITING_ANNOUNCE = "CLOSED_AWAITING_ANNOUNCE"
    ANNOUNCED = "ANNOUNCED"
    FINISHED = "FINISHED"


PHASE_ORDER: Dict[Phase, int] = {phase: index for index, phase in enumerate(Phase)}


def resolve_phase(period: MatchingPeriod, now: datetime) -> Phase:
    """
    Derive the phase of `period` at `now`.

    Rules are evaluated in order, first match wins:
      1. before application_start         -> PRE_OPEN
      2. finish set and reached           -> FINISHED
      3. within [start, end] inclusive    -> OPEN
      4. announce unset or not reached    -> CLOSED_AWAITING_ANNOUNCE
      5. otherwise                        -> ANNOUNCED

    The period must already have passed `validate_period`.
    """
    if now < period.application_start:
        return Phase.PRE_OPEN
    if period.finish is not None and now >= period.finish:
        return Phase.FINISHED
    if period.application_start <= now <= period.application_end:
        return Phase.OPEN
    if period.matching_announce is None or now < period.matching_announce:
        return Phase.CLOSED_AWAITING_ANNOUNCE
    return Phase.ANNOUNCED


def phase_rank(phase: Phase) -> int:
    return PHASE_ORDER[phase]
