"""
Cooldown Guard

Decides whether a user may reapply after cancelling. Purely time based:
knows nothing about stars or period phases.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class CooldownDecision:
    allowed: bool
    remaining: timedelta

    @property
    def remaining_seconds(self) -> int:
        """Whole seconds left, rounded up so a blocked caller never sees 0."""
        if self.allowed:
            return 0
        seconds = self.remaining.total_seconds()
        whole = int(seconds)
        return whole + 1 if seconds > whole else whole


def check_cooldown(
    cancelled_at: Optional[datetime],
    now: datetime,
    cancel_time_minutes: int
) -> CooldownDecision:
    """
    remaining = cancel_time - (now - cancelled_at); allowed once remaining <= 0.
    A user who never cancelled is always allowed.
    """
    if cancelled_at is None:
        return CooldownDecision(allowed=True, remaining=timedelta(0))

    remaining = timedelta(minutes=cancel_time_minutes) - (now - cancelled_at)
    if remaining <= timedelta(0):
        return CooldownDecision(allowed=True, remaining=timedelta(0))
    return CooldownDecision(allowed=False, remaining=remaining)
