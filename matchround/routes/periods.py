"""
Matching Period API Routes.

Write path for the administrative collaborator (period registry) and the
pairing collaborator (result intake).
"""
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.database import get_db
from matchround.routes.matching import period_response
from matchround.schemas.matching import (
    MatchResultsRequest, MatchResultsResponse, PeriodCreate, PeriodResponse, PeriodUpdate
)
from matchround.services.pairing_results import record_match_results
from matchround.services.period_store import PeriodStore
from matchround.utils.clock import get_now

router = APIRouter(prefix="/api/periods", tags=["periods"])


@router.post("", response_model=PeriodResponse, status_code=201)
async def create_period(
    request: PeriodCreate,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Register a new round. Timestamps must be in order."""
    period = await PeriodStore.register_period(db, **request.model_dump())
    return period_response(period, now)


@router.get("/{period_id}", response_model=PeriodResponse)
async def get_period(
    period_id: int,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    period = await PeriodStore.get_period(db, period_id)
    return period_response(period, now)


@router.put("/{period_id}", response_model=PeriodResponse)
async def update_period(
    period_id: int,
    request: PeriodUpdate,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Change timestamps; refused once the pairing has executed."""
    period = await PeriodStore.update_period(db, period_id, request.model_dump(exclude_unset=True))
    return period_response(period, now)


@router.post("/{period_id}/results", response_model=MatchResultsResponse)
async def submit_match_results(
    period_id: int,
    request: MatchResultsRequest,
    db: AsyncSession = Depends(get_db),
    now: datetime = Depends(get_now)
):
    """Pairing collaborator hands over its verdicts; marks the period executed."""
    recorded = await record_match_results(
        db,
        period_id,
        [item.model_dump() for item in request.results],
        now=now
    )
    return MatchResultsResponse(period_id=period_id, recorded=recorded)
