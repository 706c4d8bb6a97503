"""
Application Ledger Service

Owns each user's apply/cancel record for a period and the star movements
tied to it.

Design:
- One asyncio.Lock per (user_id, period_id) serializes apply and cancel for
  that pair; different users never wait on each other. Idle locks are dropped
- The partial unique index on active applications backs the lock up in storage
- Debit/refund and the application change commit in one transaction
- Storage errors roll back and are retried once (see transactions.py)
"""
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.config.settings import settings
from matchround.errors import (
    PhaseNotOpenError, AlreadyAppliedError, NoActiveApplicationError,
    CooldownActiveError
)
from matchround.orm.application import MatchingApplication
from matchround.services.cooldown_guard import CooldownDecision, check_cooldown
from matchround.services.period_store import PeriodStore
from matchround.services.phase_resolver import Phase, resolve_phase
from matchround.services.star_ledger import StarLedger, BalanceChange
from matchround.services.transactions import run_in_transaction
from matchround.utils.clock import utc_now

logger = logging.getLogger(__name__)


class _LockEntry:
    """A lock plus the number of tasks holding or waiting for it."""
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


# Locks live per event loop; an asyncio.Lock must not be shared across loops.
# An entry is dropped as soon as no task holds or waits for it.
_application_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[Tuple[int, int], _LockEntry]]" = (
    weakref.WeakKeyDictionary()
)


def _active_lock_count() -> int:
    """Number of (user, period) locks currently registered on the running loop."""
    return len(_application_locks.get(asyncio.get_running_loop(), {}))


@asynccontextmanager
async def _application_lock(user_id: int, period_id: int):
    """Hold the lock guarding one (user, period) pair."""
    loop = asyncio.get_running_loop()
    locks = _application_locks.setdefault(loop, {})
    key = (user_id, period_id)
    entry = locks.get(key)
    if entry is None:
        entry = locks[key] = _LockEntry()
    entry.users += 1
    try:
        async with entry.lock:
            yield
    finally:
        entry.users -= 1
        if entry.users == 0:
            del locks[key]


@dataclass(frozen=True)
class ApplicationStatus:
    """Read-only view of a user's application in one period."""
    application_id: Optional[int] = None
    applied: bool = False
    cancelled: bool = False
    applied_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.applied and not self.cancelled

    @classmethod
    def from_application(cls, application: Optional[MatchingApplication]) -> "ApplicationStatus":
        if application is None:
            return cls()
        return cls(
            application_id=application.id,
            applied=bool(application.applied),
            cancelled=bool(application.cancelled),
            applied_at=application.applied_at,
            cancelled_at=application.cancelled_at,
        )


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of apply or cancel: the application and the balance change it caused."""
    application: MatchingApplication
    balance_change: BalanceChange


class ApplicationLedger:
    """Per-user, per-period application lifecycle."""

    @staticmethod
    async def _active_application(
        db: AsyncSession,
        user_id: int,
        period_id: int,
        lock: bool = False
    ) -> Optional[MatchingApplication]:
        query = select(MatchingApplication).where(
            MatchingApplication.user_id == user_id,
            MatchingApplication.period_id == period_id,
            MatchingApplication.applied.is_(True),
            MatchingApplication.cancelled.is_(False)
        )
        if lock:
            query = query.with_for_update()
        result = await db.execute(query.order_by(MatchingApplication.applied_at.desc()).limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    async def last_cancelled_at(db: AsyncSession, user_id: int, period_id: int) -> Optional[datetime]:
        """Most recent cancellation instant of the user in this period."""
        result = await db.execute(
            select(func.max(MatchingApplication.cancelled_at)).where(
                MatchingApplication.user_id == user_id,
                MatchingApplication.period_id == period_id,
                MatchingApplication.cancelled.is_(True)
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def check_reapply_cooldown(
        db: AsyncSession,
        user_id: int,
        period_id: int,
        now: datetime
    ) -> CooldownDecision:
        cancelled_at = await ApplicationLedger.last_cancelled_at(db, user_id, period_id)
        return check_cooldown(cancelled_at, now, settings.MATCHING_CANCEL_COOLDOWN_MINUTES)

    @staticmethod
    async def apply(
        db: AsyncSession,
        user_id: int,
        period_id: int,
        now: Optional[datetime] = None
    ) -> LedgerResult:
        """
        Apply for a period, paying the configured star cost.

        Raises:
            PhaseNotOpenError: the period is not in OPEN
            AlreadyAppliedError: an active application already exists
            CooldownActiveError: the user cancelled too recently
            InsufficientFundsError: not enough stars; nothing is written
        """
        now = now or utc_now()

        async def operation() -> LedgerResult:
            period = await PeriodStore.get_period(db, period_id)
            phase = resolve_phase(period, now)
            if phase != Phase.OPEN:
                raise PhaseNotOpenError(period_id, phase.value)

            if await ApplicationLedger._active_application(db, user_id, period_id, lock=True):
                raise AlreadyAppliedError(user_id, period_id)

            cooldown = await ApplicationLedger.check_reapply_cooldown(db, user_id, period_id, now)
            if not cooldown.allowed:
                raise CooldownActiveError(cooldown.remaining_seconds)

            change = await StarLedger.debit(
                db, user_id, settings.MATCHING_APPLY_COST, f"apply:{period_id}"
            )

            application = MatchingApplication(
                user_id=user_id,
                period_id=period_id,
                applied=True,
                applied_at=now,
                cancelled=False,
                cancelled_at=None
            )
            db.add(application)
            try:
                await db.flush()
            except IntegrityError:
                raise AlreadyAppliedError(user_id, period_id)

            await StarLedger.attach_provenance(db, change.transaction_id, application.id)
            return LedgerResult(application=application, balance_change=change)

        async with _application_lock(user_id, period_id):
            result = await run_in_transaction(db, operation, "apply")

        logger.info(
            f"User {user_id} applied to period {period_id} "
            f"(application {result.application.id}, balance {result.balance_change.new_balance})"
        )
        return result

    @staticmethod
    async def cancel(
        db: AsyncSession,
        user_id: int,
        period_id: int,
        now: Optional[datetime] = None
    ) -> LedgerResult:
        """
        Cancel the active application and refund what was paid for it.

        Raises:
            PhaseNotOpenError: the period is not in OPEN
            NoActiveApplicationError: nothing to cancel
        """
        now = now or utc_now()

        async def operation() -> LedgerResult:
            period = await PeriodStore.get_period(db, period_id)
            phase = resolve_phase(period, now)
            if phase != Phase.OPEN:
                raise PhaseNotOpenError(period_id, phase.value)

            application = await ApplicationLedger._active_application(db, user_id, period_id, lock=True)
            if application is None:
                raise NoActiveApplicationError(user_id, period_id)

            application.cancelled = True
            # cancelled_at must stay strictly after applied_at
            application.cancelled_at = max(now, application.applied_at + timedelta(microseconds=1))

            debit = await StarLedger.find_debit(db, application.id)
            if debit is None:
                logger.warning(f"No debit provenance for application {application.id}, nothing to refund")
                balance = await StarLedger.get_balance(db, user_id)
                change = BalanceChange(
                    user_id=user_id,
                    delta=0,
                    new_balance=balance,
                    reason=f"refund:{application.id}",
                    applied=False
                )
            else:
                change = await StarLedger.credit(
                    db,
                    user_id,
                    -debit.amount,
                    f"refund:{application.id}",
                    application_id=application.id
                )

            await db.flush()
            return LedgerResult(application=application, balance_change=change)

        async with _application_lock(user_id, period_id):
            result = await run_in_transaction(db, operation, "cancel")

        logger.info(
            f"User {user_id} cancelled application {result.application.id} in period {period_id} "
            f"(balance {result.balance_change.new_balance})"
        )
        return result

    @staticmethod
    async def get_status(db: AsyncSession, user_id: int, period_id: int) -> ApplicationStatus:
        """
        Lock-free read of the user's application state.

        Reports the active application when there is one, otherwise the most
        recent cancelled one, otherwise an all-false status.
        """
        active = await ApplicationLedger._active_application(db, user_id, period_id)
        if active is not None:
            return ApplicationStatus.from_application(active)

        result = await db.execute(
            select(MatchingApplication)
            .where(
                MatchingApplication.user_id == user_id,
                MatchingApplication.period_id == period_id
            )
            .order_by(MatchingApplication.applied_at.desc(), MatchingApplication.id.desc())
            .limit(1)
        )
        return ApplicationStatus.from_application(result.scalar_one_or_none())
