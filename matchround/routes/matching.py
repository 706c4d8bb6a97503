"""
Matching Lifecycle API Routes.

Polled status, apply/cancel, match result and chat window for participants.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.database import get_db
from matchround.orm.match_result import MatchOutcome
from matchround.orm.period import MatchingPeriod
from matchround.schemas.matching import (
    ApplicationResponse, ChatWindowResponse, CountdownResponse, CurrentPeriodResponse,
    MatchingActionRequest, MatchingActionResponse, MatchResultResponse, PeriodResponse,
    StatusResponse
)
from matchround.services.chat_gate import Countdown
from matchround.services.lifecycle_service import LifecycleService, ActionReceipt
from matchround.services.phase_resolver import resolve_phase
from matchround.utils.clock import get_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/matching", tags=["matching"])


# =============================================================================
# Response builders
# =============================================================================

def period_response(period: Optional[MatchingPeriod], now: datetime) -> Optional[PeriodResponse]:
    if period is None:
        return None
    return PeriodResponse(**period.to_dict(), phase=resolve_phase(period, now).value)


def countdown_response(countdown: Optional[Countdown]) -> Optional[CountdownResponse]:
    if countdown is None:
        return None
    return CountdownResponse(
        days=countdown.days,
        hours=countdown.hours,
        minutes=countdown.minutes,
        seconds=countdown.seconds,
        total_seconds=countdown.total_seconds,
        text=countdown.text
    )


def action_response(receipt: ActionReceipt, message: str) -> MatchingActionResponse:
    return MatchingActionResponse(
        message=message,
        application=ApplicationResponse(**receipt.application.to_dict()),
        new_star_balance=receipt.new_star_balance
    )


# =============================================================================
# Routes
# =============================================================================

@router.get("/period", response_model=CurrentPeriodResponse)
async def get_current_period(
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """
    Current round and, once results are announced, the next one.

    Both are null when no round is configured.
    """
    pair = await LifecycleService.get_current_and_next_period(db, now)
    return CurrentPeriodResponse(
        current=period_response(pair.current, now),
        next=period_response(pair.next, now)
    )


@router.get("/status", response_model=StatusResponse)
async def get_status(
    user_id: int = Query(..., gt=0),
    period_id: Optional[int] = Query(None, gt=0),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """
    Status of a user in a round (the current one when period_id is omitted).

    Safe to poll; every call is recomputed from committed state.
    """
    view = await LifecycleService.get_status(db, user_id, period_id, now)
    return StatusResponse(
        user_id=view.user_id,
        period_id=view.period_id,
        phase=view.phase.value if view.phase else None,
        display_status=view.display_status.value,
        actions=[action.value for action in view.actions],
        countdown=countdown_response(view.countdown),
        cooldown_remaining_seconds=view.cooldown_remaining_seconds,
        partner_user_id=view.partner_user_id,
        poll_interval_seconds=view.poll_interval_seconds
    )


@router.post("/apply", response_model=MatchingActionResponse)
async def apply(
    request: MatchingActionRequest,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """
    Apply to a round. Costs stars.

    A duplicate is rejected with ALREADY_APPLIED, never charged twice.
    """
    receipt = await LifecycleService.apply(db, request.user_id, request.period_id, now)
    return action_response(receipt, "Application submitted")


@router.post("/cancel", response_model=MatchingActionResponse)
async def cancel(
    request: MatchingActionRequest,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Cancel the active application; the stars paid are refunded."""
    receipt = await LifecycleService.cancel(db, request.user_id, request.period_id, now)
    return action_response(receipt, "Application cancelled")


@router.get("/{period_id}/result", response_model=MatchResultResponse)
async def get_match_result(
    period_id: int,
    user_id: int = Query(..., gt=0),
    db: AsyncSession = Depends(get_db)
):
    """Raw pairing verdict; PAIRING_NOT_YET_RUN before the pairing has executed."""
    verdict = await LifecycleService.get_match_result(db, user_id, period_id)
    matched = None
    if verdict.outcome != MatchOutcome.UNKNOWN:
        matched = verdict.outcome == MatchOutcome.MATCHED
    return MatchResultResponse(
        period_id=period_id,
        user_id=user_id,
        matched=matched,
        outcome=verdict.outcome.value,
        partner_user_id=verdict.partner_user_id
    )


@router.get("/{period_id}/chat-window", response_model=ChatWindowResponse)
async def get_chat_window(
    period_id: int,
    user_id: int = Query(..., gt=0),
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Whether the matched pair may still chat, with the time left."""
    window = await LifecycleService.get_chat_window(db, user_id, period_id, now)
    return ChatWindowResponse(
        period_id=period_id,
        user_id=user_id,
        allowed=window.allowed,
        remaining_seconds=int(window.remaining.total_seconds()) if window.allowed else 0,
        countdown=countdown_response(window.countdown)
    )
