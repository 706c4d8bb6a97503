"""
Matching Lifecycle Service

Facade used by the HTTP layer. Ties the period store, the application
ledger, the pairing results, the outcome resolver and the chat window gate
together so every answer is recomputed from committed state and the clock.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.config.settings import settings
from matchround.errors import NoActiveRoundError, PairingNotYetRunError, PeriodNotFoundError
from matchround.orm.application import MatchingApplication
from matchround.orm.period import MatchingPeriod
from matchround.services.application_ledger import ApplicationLedger, ApplicationStatus
from matchround.services.chat_gate import ChatWindow, Countdown, evaluate_chat_window, with_chat_action
from matchround.services.outcome_resolver import (
    DisplayStatus, Resolution, UserAction, no_active_round, resolve_outcome
)
from matchround.services.pairing_results import MatchVerdict, get_match_result
from matchround.services.period_store import PeriodStore, PeriodPair
from matchround.services.phase_resolver import Phase, resolve_phase
from matchround.services.star_ledger import BalanceChange
from matchround.services.transactions import run_in_transaction
from matchround.utils.clock import utc_now

logger = logging.getLogger(__name__)

_ACTION_ORDER = [UserAction.CAN_APPLY, UserAction.CAN_CANCEL, UserAction.CAN_CHAT]


@dataclass(frozen=True)
class StatusView:
    """Everything a polling client needs to render one user's round state."""
    user_id: int
    period_id: Optional[int]
    phase: Optional[Phase]
    display_status: DisplayStatus
    actions: List[UserAction]
    countdown: Optional[Countdown] = None
    cooldown_remaining_seconds: Optional[int] = None
    partner_user_id: Optional[int] = None
    poll_interval_seconds: int = 5


@dataclass(frozen=True)
class ActionReceipt:
    """Result of apply or cancel."""
    application: MatchingApplication
    balance_change: BalanceChange

    @property
    def new_star_balance(self) -> int:
        return self.balance_change.new_balance


class LifecycleService:
    """Matching round lifecycle facade."""

    @staticmethod
    async def _load_period(
        db: AsyncSession,
        period_id: Optional[int],
        now: datetime
    ) -> Optional[MatchingPeriod]:
        """The requested period, or the current round when no id is given."""
        if period_id is not None:
            return await PeriodStore.get_period(db, period_id)
        pair = await PeriodStore.get_current_and_next_period(db, now)
        return pair.current

    @staticmethod
    async def _require_period_id(db: AsyncSession, period_id: Optional[int], now: datetime) -> int:
        period = await LifecycleService._load_period(db, period_id, now)
        if period is None:
            raise NoActiveRoundError()
        return period.id

    @staticmethod
    async def _read_verdict(
        db: AsyncSession,
        user_id: int,
        period: MatchingPeriod,
        application: ApplicationStatus,
        now: datetime
    ) -> MatchVerdict:
        """
        Verdict for this period only. Any doubt reads as UNKNOWN (pending).

        Only consulted when it can matter: announced phase, active application.
        """
        if not application.is_active or resolve_phase(period, now) != Phase.ANNOUNCED:
            return MatchVerdict.unknown()
        try:
            return await get_match_result(db, user_id, period.id)
        except PairingNotYetRunError:
            return MatchVerdict.unknown()
        except SQLAlchemyError as e:
            logger.warning(f"Match result read failed for user {user_id}, period {period.id}: {e}")
            await db.rollback()
            await db.refresh(period)
            return MatchVerdict.unknown()

    @staticmethod
    async def get_current_and_next_period(db: AsyncSession, now: Optional[datetime] = None) -> PeriodPair:
        return await PeriodStore.get_current_and_next_period(db, now or utc_now())

    @staticmethod
    async def get_status(
        db: AsyncSession,
        user_id: int,
        period_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> StatusView:
        """
        Resolve what the user sees right now.

        With no period_id the current round is used. When none exists, or the
        requested period has been deleted, the status is NO_ACTIVE_ROUND
        rather than an error.
        """
        now = now or utc_now()

        async def operation():
            try:
                period = await LifecycleService._load_period(db, period_id, now)
            except PeriodNotFoundError:
                # Deleted rounds read as "no active round", not as an error
                logger.info(f"Period {period_id} not found, reporting no active round")
                period = None
            if period is None:
                return None, no_active_round(), None

            application = await ApplicationLedger.get_status(db, user_id, period.id)
            cooldown = await ApplicationLedger.check_reapply_cooldown(db, user_id, period.id, now)
            verdict = await LifecycleService._read_verdict(db, user_id, period, application, now)

            resolution = resolve_outcome(period, application, verdict, now, cooldown)
            window = evaluate_chat_window(resolution.display_status, period, now)
            return period, with_chat_action(resolution, window), window

        period, resolution, window = await run_in_transaction(db, operation, "status")
        return LifecycleService._to_view(user_id, period, resolution, window)

    @staticmethod
    def _to_view(
        user_id: int,
        period: Optional[MatchingPeriod],
        resolution: Resolution,
        window: Optional[ChatWindow]
    ) -> StatusView:
        cooldown = resolution.cooldown
        return StatusView(
            user_id=user_id,
            period_id=period.id if period is not None else None,
            phase=resolution.phase,
            display_status=resolution.display_status,
            actions=[action for action in _ACTION_ORDER if action in resolution.actions],
            countdown=window.countdown if window is not None and window.allowed else None,
            cooldown_remaining_seconds=(
                cooldown.remaining_seconds if cooldown is not None and not cooldown.allowed else None
            ),
            partner_user_id=resolution.partner_user_id,
            poll_interval_seconds=settings.MATCHING_STATUS_POLL_SECONDS,
        )

    @staticmethod
    async def apply(
        db: AsyncSession,
        user_id: int,
        period_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> ActionReceipt:
        """Apply to the given (or current) round. See ApplicationLedger.apply."""
        now = now or utc_now()
        target = await LifecycleService._require_period_id(db, period_id, now)
        result = await ApplicationLedger.apply(db, user_id, target, now)
        return ActionReceipt(application=result.application, balance_change=result.balance_change)

    @staticmethod
    async def cancel(
        db: AsyncSession,
        user_id: int,
        period_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> ActionReceipt:
        """Cancel in the given (or current) round. See ApplicationLedger.cancel."""
        now = now or utc_now()
        target = await LifecycleService._require_period_id(db, period_id, now)
        result = await ApplicationLedger.cancel(db, user_id, target, now)
        return ActionReceipt(application=result.application, balance_change=result.balance_change)

    @staticmethod
    async def get_match_result(db: AsyncSession, user_id: int, period_id: int) -> MatchVerdict:
        """
        Raw verdict for a period.

        Raises:
            PeriodNotFoundError, PairingNotYetRunError
        """
        await PeriodStore.get_period(db, period_id)
        return await get_match_result(db, user_id, period_id)

    @staticmethod
    async def get_chat_window(
        db: AsyncSession,
        user_id: int,
        period_id: int,
        now: Optional[datetime] = None
    ) -> ChatWindow:
        """Recompute the chat gate from scratch against the clock."""
        now = now or utc_now()
        view = await LifecycleService.get_status(db, user_id, period_id, now)
        if view.display_status != DisplayStatus.MATCH_SUCCESS:
            return evaluate_chat_window(view.display_status, None, now)
        period = await PeriodStore.get_period(db, period_id)
        return evaluate_chat_window(view.display_status, period, now)
