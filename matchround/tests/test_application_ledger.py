"""
Application Ledger Tests

Apply/cancel lifecycle, mutual exclusion under concurrency, balance
conservation and the reapplication cooldown.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, func

from matchround.errors import (
    AlreadyAppliedError, CooldownActiveError, InsufficientFundsError,
    NoActiveApplicationError, PhaseNotOpenError, TransientFailureError
)
from matchround.orm.application import MatchingApplication
from matchround.orm.star import StarTransaction
from matchround.services.application_ledger import ApplicationLedger, _active_lock_count
from matchround.services.star_ledger import StarLedger

from conftest import T0, make_period, grant_stars


async def count_active(db, user_id, period_id) -> int:
    result = await db.execute(
        select(func.count(MatchingApplication.id)).where(
            MatchingApplication.user_id == user_id,
            MatchingApplication.period_id == period_id,
            MatchingApplication.cancelled.is_(False)
        )
    )
    return result.scalar_one()


class TestApply:

    @pytest.mark.asyncio
    async def test_apply_debits_and_creates_application(self, db, period):
        await grant_stars(db, 1, 10)

        result = await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=10))

        assert result.application.applied is True
        assert result.application.cancelled is False
        assert result.application.applied_at == T0 + timedelta(minutes=10)
        assert result.balance_change.new_balance == 5

        debit = await StarLedger.find_debit(db, result.application.id)
        assert debit is not None
        assert debit.amount == -5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset", [timedelta(minutes=-1), timedelta(hours=1, seconds=1)])
    async def test_apply_outside_open_phase_is_rejected(self, db, period, offset):
        await grant_stars(db, 1, 10)

        with pytest.raises(PhaseNotOpenError):
            await ApplicationLedger.apply(db, 1, period.id, T0 + offset)

        assert await StarLedger.get_balance(db, 1) == 10

    @pytest.mark.asyncio
    async def test_duplicate_apply_is_rejected_without_second_debit(self, db, period):
        await grant_stars(db, 1, 20)
        await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=1))

        with pytest.raises(AlreadyAppliedError):
            await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=2))

        assert await StarLedger.get_balance(db, 1) == 15

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_application(self, db, period):
        await grant_stars(db, 1, 4)

        with pytest.raises(InsufficientFundsError):
            await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=1))

        assert await count_active(db, 1, period.id) == 0
        assert await StarLedger.get_balance(db, 1) == 4

    @pytest.mark.asyncio
    async def test_apply_cost_comes_from_settings(self, db, period, matching_settings, monkeypatch):
        monkeypatch.setattr(matching_settings, "MATCHING_APPLY_COST", 3)
        await grant_stars(db, 1, 10)
        result = await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=1))
        assert result.balance_change.new_balance == 7


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_refunds_exactly_once(self, db, period):
        await grant_stars(db, 1, 10)
        await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=10))

        result = await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(minutes=20))

        assert result.application.cancelled is True
        assert result.application.cancelled_at == T0 + timedelta(minutes=20)
        assert result.balance_change.new_balance == 10

        with pytest.raises(NoActiveApplicationError):
            await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(minutes=21))

        assert await StarLedger.get_balance(db, 1) == 10

    @pytest.mark.asyncio
    async def test_cancel_without_application(self, db, period):
        with pytest.raises(NoActiveApplicationError):
            await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(minutes=1))

    @pytest.mark.asyncio
    async def test_cancel_after_open_is_rejected(self, db, period):
        await grant_stars(db, 1, 10)
        await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=10))

        with pytest.raises(PhaseNotOpenError):
            await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(hours=1, minutes=1))

        status = await ApplicationLedger.get_status(db, 1, period.id)
        assert status.is_active
        assert await StarLedger.get_balance(db, 1) == 5

    @pytest.mark.asyncio
    async def test_refund_uses_amount_paid(self, db, period, matching_settings, monkeypatch):
        await grant_stars(db, 1, 10)
        await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=1))

        monkeypatch.setattr(matching_settings, "MATCHING_APPLY_COST", 8)
        result = await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(minutes=2))

        assert result.balance_change.delta == 5
        assert result.balance_change.new_balance == 10

    @pytest.mark.asyncio
    async def test_cancelled_at_stays_after_applied_at(self, db, period):
        await grant_stars(db, 1, 10)
        applied = await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=5))
        cancelled = await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(minutes=5))
        assert cancelled.application.cancelled_at > applied.application.applied_at


class TestCooldown:

    @pytest.mark.asyncio
    async def test_reapply_blocked_until_cooldown_elapses(self, db, period):
        await grant_stars(db, 1, 10)
        await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=10))
        await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(minutes=20))

        with pytest.raises(CooldownActiveError) as exc_info:
            await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=20, seconds=15))
        assert exc_info.value.details["remaining_seconds"] == 45
        assert await StarLedger.get_balance(db, 1) == 10

        result = await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=21))
        assert result.balance_change.new_balance == 5

    @pytest.mark.asyncio
    async def test_cooldown_is_scoped_to_the_period(self, db, period):
        other = await make_period(db, start=T0 - timedelta(hours=3))
        await grant_stars(db, 1, 20)
        # Other period: T0-3h .. T0-2h open, so use it before the main one opens
        await ApplicationLedger.apply(db, 1, other.id, T0 - timedelta(hours=2, minutes=30))
        await ApplicationLedger.cancel(db, 1, other.id, T0 - timedelta(hours=2, minutes=20))

        result = await ApplicationLedger.apply(db, 1, period.id, T0)
        assert result.application.period_id == period.id


class TestStatus:

    @pytest.mark.asyncio
    async def test_no_application_reads_all_false(self, db, period):
        status = await ApplicationLedger.get_status(db, 1, period.id)
        assert status.applied is False
        assert status.cancelled is False
        assert status.applied_at is None
        assert status.cancelled_at is None

    @pytest.mark.asyncio
    async def test_reports_latest_cancellation(self, db, period):
        await grant_stars(db, 1, 10)
        await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=1))
        await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(minutes=2))

        status = await ApplicationLedger.get_status(db, 1, period.id)
        assert status.applied is True
        assert status.cancelled is True
        assert status.is_active is False
        assert status.cancelled_at == T0 + timedelta(minutes=2)


class TestConcurrency:
    """Concurrent requests for the same (user, period) pair."""

    @pytest.mark.asyncio
    async def test_concurrent_applies_yield_exactly_one_success(self, db, period, session_factory):
        await grant_stars(db, 1, 100)
        now = T0 + timedelta(minutes=5)
        attempts = 8

        async def attempt():
            async with session_factory() as session:
                try:
                    await ApplicationLedger.apply(session, 1, period.id, now)
                    return "applied"
                except AlreadyAppliedError:
                    return "duplicate"

        results = await asyncio.gather(*(attempt() for _ in range(attempts)))

        assert results.count("applied") == 1
        assert results.count("duplicate") == attempts - 1
        assert await count_active(db, 1, period.id) == 1
        assert await StarLedger.get_balance(db, 1) == 95

        debits = await db.execute(
            select(func.count(StarTransaction.id)).where(StarTransaction.amount < 0)
        )
        assert debits.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_concurrent_apply_and_cancel_stay_consistent(self, db, period, session_factory):
        await grant_stars(db, 1, 10)
        await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=1))
        now = T0 + timedelta(minutes=30)

        async def run(operation):
            async with session_factory() as session:
                try:
                    await operation(session, 1, period.id, now)
                    return "ok"
                except (AlreadyAppliedError, CooldownActiveError, NoActiveApplicationError) as e:
                    return e.code

        await asyncio.gather(run(ApplicationLedger.cancel), run(ApplicationLedger.apply))

        active = await count_active(db, 1, period.id)
        balance = await StarLedger.get_balance(db, 1)
        # Either the cancel won and the apply hit the cooldown, or the apply
        # was a duplicate and the cancel refunded: never debit without application
        assert (active, balance) in {(0, 10), (1, 5)}


class TestStorageFailures:

    @pytest.mark.asyncio
    async def test_persistent_storage_error_is_transient_failure(self, db, period, monkeypatch):
        from sqlalchemy.exc import OperationalError

        calls = {"count": 0}

        async def broken_debit(*args, **kwargs):
            calls["count"] += 1
            raise OperationalError("UPDATE star_wallets", {}, Exception("database is locked"))

        monkeypatch.setattr(StarLedger, "debit", staticmethod(broken_debit))

        with pytest.raises(TransientFailureError):
            await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=1))

        assert calls["count"] == 2
        assert await count_active(db, 1, period.id) == 0

    @pytest.mark.asyncio
    async def test_single_storage_error_is_retried(self, db, period, monkeypatch):
        from sqlalchemy.exc import OperationalError

        await grant_stars(db, 1, 10)
        real_debit = StarLedger.debit
        calls = {"count": 0}

        async def flaky_debit(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise OperationalError("UPDATE star_wallets", {}, Exception("database is locked"))
            return await real_debit(*args, **kwargs)

        monkeypatch.setattr(StarLedger, "debit", staticmethod(flaky_debit))

        result = await ApplicationLedger.apply(db, 1, period.id, T0 + timedelta(minutes=1))

        assert calls["count"] == 2
        assert result.balance_change.new_balance == 5


class TestLockRegistry:

    @pytest.mark.asyncio
    async def test_idle_locks_are_released(self, db, period):
        for user_id in range(1, 51):
            await grant_stars(db, user_id, 5)
            await ApplicationLedger.apply(db, user_id, period.id, T0 + timedelta(minutes=1))
            await ApplicationLedger.cancel(db, user_id, period.id, T0 + timedelta(minutes=2))

        with pytest.raises(NoActiveApplicationError):
            await ApplicationLedger.cancel(db, 1, period.id, T0 + timedelta(minutes=3))

        assert _active_lock_count() == 0

    @pytest.mark.asyncio
    async def test_contended_lock_is_released_after_use(self, db, period, session_factory):
        await grant_stars(db, 1, 100)
        now = T0 + timedelta(minutes=5)

        async def attempt():
            async with session_factory() as session:
                try:
                    await ApplicationLedger.apply(session, 1, period.id, now)
                except AlreadyAppliedError:
                    pass

        await asyncio.gather(*(attempt() for _ in range(5)))

        assert await count_active(db, 1, period.id) == 1
        assert _active_lock_count() == 0
