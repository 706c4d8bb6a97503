"""
Star API Routes.

Balance and recent ledger entries, plus administrative grants.
"""
from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.database import get_db
from matchround.schemas.matching import (
    StarGrantRequest, StarGrantResponse, StarSummaryResponse, StarTransactionResponse
)
from matchround.services.star_ledger import StarLedger
from matchround.services.transactions import run_in_transaction

router = APIRouter(prefix="/api/stars", tags=["stars"])


@router.get("/{user_id}", response_model=StarSummaryResponse)
async def get_stars(
    user_id: int = Path(..., gt=0, le=2_147_483_647),
    db: AsyncSession = Depends(get_db)
):
    """Balance and most recent transactions, newest first."""
    balance = await StarLedger.get_balance(db, user_id)
    transactions = await StarLedger.list_transactions(db, user_id)
    return StarSummaryResponse(
        user_id=user_id,
        balance=balance,
        recent_transactions=[StarTransactionResponse(**tx.to_dict()) for tx in transactions]
    )


@router.post("/{user_id}/grant", response_model=StarGrantResponse)
async def grant_stars(
    request: StarGrantRequest,
    user_id: int = Path(..., gt=0, le=2_147_483_647),
    db: AsyncSession = Depends(get_db)
):
    """Credit stars. Replaying the same reason for the same user is a no-op."""
    change = await run_in_transaction(
        db,
        lambda: StarLedger.credit(db, user_id, request.amount, f"grant:{user_id}:{request.reason}"),
        "grant"
    )
    return StarGrantResponse(user_id=user_id, applied=change.applied, new_balance=change.new_balance)
