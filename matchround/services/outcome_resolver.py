"""
Match Outcome Resolver

Pure function of (period, application status, match verdict, now) that
produces the one status a participant sees and the actions they may take.
Recomputed on every poll; nothing here is cached or mutated.
"""
import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, FrozenSet

from matchround.orm.match_result import MatchOutcome
from matchround.orm.period import MatchingPeriod
from matchround.services.application_ledger import ApplicationStatus
from matchround.services.cooldown_guard import CooldownDecision
from matchround.services.pairing_results import MatchVerdict
from matchround.services.phase_resolver import Phase, resolve_phase

logger = logging.getLogger(__name__)


class DisplayStatus(str, enum.Enum):
    NO_ACTIVE_ROUND = "NO_ACTIVE_ROUND"
    ROUND_FINISHED = "ROUND_FINISHED"
    NOT_OPEN_YET = "NOT_OPEN_YET"
    NOT_APPLIED = "NOT_APPLIED"
    APPLICATION_OPEN_AWAITING_ACTION = "APPLICATION_OPEN_AWAITING_ACTION"
    APPLIED_WAITING = "APPLIED_WAITING"
    APPLICATION_CLOSED_NOT_APPLIED = "APPLICATION_CLOSED_NOT_APPLIED"
    RESULT_PENDING = "RESULT_PENDING"
    MATCH_SUCCESS = "MATCH_SUCCESS"
    MATCH_FAILURE = "MATCH_FAILURE"


class UserAction(str, enum.Enum):
    CAN_APPLY = "CAN_APPLY"
    CAN_CANCEL = "CAN_CANCEL"
    CAN_CHAT = "CAN_CHAT"


@dataclass(frozen=True)
class Resolution:
    """Resolved status for one user in one period at one instant."""
    display_status: DisplayStatus
    phase: Optional[Phase] = None
    actions: FrozenSet[UserAction] = field(default_factory=frozenset)
    partner_user_id: Optional[int] = None
    cooldown: Optional[CooldownDecision] = None

    def with_action(self, action: UserAction) -> "Resolution":
        return replace(self, actions=self.actions | {action})


def no_active_round() -> Resolution:
    return Resolution(display_status=DisplayStatus.NO_ACTIVE_ROUND)


def resolve_outcome(
    period: Optional[MatchingPeriod],
    application: ApplicationStatus,
    verdict: MatchVerdict,
    now: datetime,
    cooldown: Optional[CooldownDecision] = None
) -> Resolution:
    """
    Resolve the display status.

    `verdict` must be the pairing result for this very period. An UNKNOWN
    verdict after the announcement is RESULT_PENDING, never MATCH_FAILURE.
    `cooldown` gates CAN_APPLY during OPEN; None means no cooldown applies.
    CAN_CHAT is added later by the chat window gate.
    """
    if period is None:
        return no_active_round()

    phase = resolve_phase(period, now)
    active = application.is_active

    if phase == Phase.PRE_OPEN:
        resolution = Resolution(DisplayStatus.NOT_OPEN_YET, phase)

    elif phase == Phase.FINISHED:
        resolution = Resolution(DisplayStatus.ROUND_FINISHED, phase)

    elif phase == Phase.OPEN:
        if active:
            resolution = Resolution(
                DisplayStatus.APPLIED_WAITING, phase, frozenset({UserAction.CAN_CANCEL})
            )
        else:
            may_apply = cooldown is None or cooldown.allowed
            status = (
                DisplayStatus.APPLICATION_OPEN_AWAITING_ACTION
                if application.cancelled
                else DisplayStatus.NOT_APPLIED
            )
            resolution = Resolution(
                status,
                phase,
                frozenset({UserAction.CAN_APPLY}) if may_apply else frozenset(),
                cooldown=cooldown,
            )

    elif phase == Phase.CLOSED_AWAITING_ANNOUNCE:
        status = DisplayStatus.APPLIED_WAITING if active else DisplayStatus.APPLICATION_CLOSED_NOT_APPLIED
        resolution = Resolution(status, phase)

    elif not active:
        resolution = Resolution(DisplayStatus.APPLICATION_CLOSED_NOT_APPLIED, phase)

    elif verdict.outcome == MatchOutcome.MATCHED:
        resolution = Resolution(
            DisplayStatus.MATCH_SUCCESS, phase, partner_user_id=verdict.partner_user_id
        )

    elif verdict.outcome == MatchOutcome.UNMATCHED:
        resolution = Resolution(DisplayStatus.MATCH_FAILURE, phase)

    else:
        resolution = Resolution(DisplayStatus.RESULT_PENDING, phase)

    logger.debug(
        f"Resolved period {period.id}: phase={phase.value} active={active} "
        f"verdict={verdict.outcome.value} -> {resolution.display_status.value}"
    )
    return resolution
