"""
Pydantic Schemas for the Matching Lifecycle

Request and response models for periods, status polling, apply/cancel,
match results, chat window and stars.
"""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, model_validator


# ============================================================================
# Period Schemas
# ============================================================================

class PeriodCreate(BaseModel):
    """Schema for registering a matching period."""
    application_start: datetime = Field(..., description="Applications open")
    application_end: datetime = Field(..., description="Applications close")
    matching_run: Optional[datetime] = Field(None, description="Pairing algorithm runs")
    matching_announce: Optional[datetime] = Field(None, description="Results are announced")
    finish: Optional[datetime] = Field(None, description="Round closes, chat ends")


class PeriodUpdate(BaseModel):
    """Schema for changing timestamps of a period that has not run yet."""
    application_start: Optional[datetime] = None
    application_end: Optional[datetime] = None
    matching_run: Optional[datetime] = None
    matching_announce: Optional[datetime] = None
    finish: Optional[datetime] = None


class PeriodResponse(BaseModel):
    id: int
    application_start: Optional[str] = None
    application_end: Optional[str] = None
    matching_run: Optional[str] = None
    matching_announce: Optional[str] = None
    finish: Optional[str] = None
    executed: bool
    phase: Optional[str] = None


class CurrentPeriodResponse(BaseModel):
    current: Optional[PeriodResponse] = None
    next: Optional[PeriodResponse] = None


# ============================================================================
# Status / Action Schemas
# ============================================================================

class CountdownResponse(BaseModel):
    days: int
    hours: int
    minutes: int
    seconds: int
    total_seconds: int
    text: str


class StatusResponse(BaseModel):
    """Schema for the polled status of one user in one round."""
    user_id: int
    period_id: Optional[int] = None
    phase: Optional[str] = None
    display_status: str
    actions: List[str]
    countdown: Optional[CountdownResponse] = None
    cooldown_remaining_seconds: Optional[int] = None
    partner_user_id: Optional[int] = None
    poll_interval_seconds: int


class MatchingActionRequest(BaseModel):
    """Schema for apply and cancel."""
    user_id: int = Field(..., gt=0, description="Acting user")
    period_id: Optional[int] = Field(None, gt=0, description="Round; defaults to the current one")


class ApplicationResponse(BaseModel):
    id: int
    user_id: int
    period_id: int
    applied: bool
    applied_at: Optional[str] = None
    cancelled: bool
    cancelled_at: Optional[str] = None


class MatchingActionResponse(BaseModel):
    success: bool = True
    message: str
    application: ApplicationResponse
    new_star_balance: int


class MatchResultResponse(BaseModel):
    period_id: int
    user_id: int
    matched: Optional[bool] = None
    outcome: str
    partner_user_id: Optional[int] = None


class ChatWindowResponse(BaseModel):
    period_id: int
    user_id: int
    allowed: bool
    remaining_seconds: int
    countdown: Optional[CountdownResponse] = None


# ============================================================================
# Pairing Intake Schemas
# ============================================================================

class MatchResultItem(BaseModel):
    user_id: int = Field(..., gt=0)
    matched: Optional[bool] = Field(None, description="None leaves the verdict unknown")
    partner_user_id: Optional[int] = Field(None, gt=0)

    @model_validator(mode="after")
    def partner_iff_matched(self):
        if self.matched is True and self.partner_user_id is None:
            raise ValueError("partner_user_id is required when matched is true")
        if self.matched is not True and self.partner_user_id is not None:
            raise ValueError("partner_user_id is only allowed when matched is true")
        return self


class MatchResultsRequest(BaseModel):
    results: List[MatchResultItem] = Field(default_factory=list)


class MatchResultsResponse(BaseModel):
    success: bool = True
    period_id: int
    recorded: int


# ============================================================================
# Star Schemas
# ============================================================================

class StarTransactionResponse(BaseModel):
    id: int
    amount: int
    reason: str
    application_id: Optional[int] = None
    balance_after: int
    created_at: Optional[str] = None


class StarSummaryResponse(BaseModel):
    user_id: int
    balance: int
    recent_transactions: List[StarTransactionResponse]


class StarGrantRequest(BaseModel):
    """Schema for an administrative star grant. `reason` doubles as the idempotency key."""
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=100)


class StarGrantResponse(BaseModel):
    success: bool = True
    user_id: int
    applied: bool
    new_balance: int
