"""
Chat Window Gate

Whether matched users may still talk, and how long they have left.
The window closes at the period's finish instant.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from matchround.orm.period import MatchingPeriod
from matchround.services.outcome_resolver import DisplayStatus, Resolution, UserAction

_UNITS = (
    ("일", 86400),
    ("시간", 3600),
    ("분", 60),
    ("초", 1),
)


@dataclass(frozen=True)
class Countdown:
    days: int
    hours: int
    minutes: int
    seconds: int
    total_seconds: int
    text: str


@dataclass(frozen=True)
class ChatWindow:
    allowed: bool
    remaining: timedelta
    countdown: Optional[Countdown] = None


def format_countdown(remaining: timedelta) -> Countdown:
    """
    Descending countdown such as "2일 3시간 10분 5초".

    Zero units are left out; anything under a second reads "0초".
    """
    total = max(int(remaining.total_seconds()), 0)
    values = []
    rest = total
    for _, size in _UNITS:
        values.append(rest // size)
        rest %= size

    parts = [f"{value}{label}" for (label, _), value in zip(_UNITS, values) if value]
    text = " ".join(parts) if parts else "0초"
    days, hours, minutes, seconds = values
    return Countdown(days, hours, minutes, seconds, total, text)


def evaluate_chat_window(
    display_status: DisplayStatus,
    period: Optional[MatchingPeriod],
    now: datetime
) -> ChatWindow:
    """
    allowed = MATCH_SUCCESS and now < finish.

    Evaluated against the clock on every call, so a closed window is
    reported closed even if the display status was resolved earlier.
    """
    closed = ChatWindow(allowed=False, remaining=timedelta(0))
    if display_status != DisplayStatus.MATCH_SUCCESS or period is None or period.finish is None:
        return closed

    remaining = period.finish - now
    if remaining <= timedelta(0):
        return closed
    return ChatWindow(allowed=True, remaining=remaining, countdown=format_countdown(remaining))


def with_chat_action(resolution: Resolution, window: ChatWindow) -> Resolution:
    if window.allowed:
        return resolution.with_action(UserAction.CAN_CHAT)
    return resolution
