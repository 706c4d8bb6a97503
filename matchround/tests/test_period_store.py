"""
Period Store Tests

Validation, registration, updates and current/next round selection.
"""
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from matchround.errors import InvalidPeriodError, PeriodNotFoundError, TransientFailureError
from matchround.orm.period import MatchingPeriod
from matchround.services import period_store
from matchround.services.period_store import PeriodStore, select_current_and_next, validate_period

from conftest import T0, build_period, make_period


class TestValidation:

    def test_standard_period_is_valid(self):
        validate_period(build_period())

    def test_optional_timestamps_may_be_unset(self):
        validate_period(build_period(matching_run=None, matching_announce=None, finish=None))

    @pytest.mark.parametrize("missing", ["application_start", "application_end"])
    def test_application_window_is_required(self, missing):
        with pytest.raises(InvalidPeriodError):
            validate_period(build_period(**{missing: None}))

    def test_end_must_follow_start(self):
        with pytest.raises(InvalidPeriodError):
            validate_period(build_period(application_end=T0))

    def test_announce_before_run_is_rejected(self):
        with pytest.raises(InvalidPeriodError) as exc_info:
            validate_period(build_period(matching_announce=T0 + timedelta(minutes=30)))
        assert "matching_announce" in exc_info.value.message

    def test_order_checked_across_unset_fields(self):
        period = build_period(matching_announce=None, finish=T0 + timedelta(minutes=30))
        with pytest.raises(InvalidPeriodError):
            validate_period(period)


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_and_load(self, db):
        period = await make_period(db)
        loaded = await PeriodStore.get_period(db, period.id)
        assert loaded.application_start == T0
        assert loaded.executed is False

    @pytest.mark.asyncio
    async def test_register_rejects_bad_order(self, db):
        with pytest.raises(InvalidPeriodError):
            await make_period(db, finish=T0 + timedelta(minutes=10))

    @pytest.mark.asyncio
    async def test_unknown_period(self, db):
        with pytest.raises(PeriodNotFoundError):
            await PeriodStore.get_period(db, 999)

    @pytest.mark.asyncio
    async def test_update_revalidates(self, db, period):
        updated = await PeriodStore.update_period(
            db, period.id, {"finish": T0 + timedelta(days=5)}
        )
        assert updated.finish == T0 + timedelta(days=5)

        with pytest.raises(InvalidPeriodError):
            await PeriodStore.update_period(db, period.id, {"application_end": T0 - timedelta(hours=1)})

        reloaded = await PeriodStore.get_period(db, period.id)
        assert reloaded.application_end == T0 + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_executed_period_is_frozen(self, db, period):
        await db.execute(
            update(MatchingPeriod).where(MatchingPeriod.id == period.id).values(executed=True)
        )
        await db.commit()

        with pytest.raises(InvalidPeriodError):
            await PeriodStore.update_period(db, period.id, {"finish": T0 + timedelta(days=5)})

    @pytest.mark.asyncio
    async def test_invalid_stored_row_is_rejected_on_read(self, db):
        row = MatchingPeriod(application_start=T0, application_end=None, executed=False)
        db.add(row)
        await db.commit()

        with pytest.raises(InvalidPeriodError):
            await PeriodStore.get_period(db, row.id)

        pair = await PeriodStore.get_current_and_next_period(db, T0)
        assert pair.current is None


def weekly(period_id: int, weeks: int) -> MatchingPeriod:
    return build_period(
        id=period_id,
        application_start=T0 + timedelta(weeks=weeks),
        application_end=T0 + timedelta(weeks=weeks, hours=1),
        matching_run=T0 + timedelta(weeks=weeks, hours=1),
        matching_announce=T0 + timedelta(weeks=weeks, hours=2),
        finish=T0 + timedelta(weeks=weeks, days=3),
    )


class TestCurrentAndNext:

    def test_nothing_configured(self):
        pair = select_current_and_next([], T0)
        assert pair.current is None
        assert pair.next is None

    def test_open_round_is_current(self):
        periods = [weekly(1, 0), weekly(2, 1)]
        pair = select_current_and_next(periods, T0 + timedelta(minutes=5))
        assert pair.current.id == 1
        assert pair.next is None

    def test_announced_round_reports_next(self):
        periods = [weekly(1, 0), weekly(2, 1), weekly(3, 2)]
        pair = select_current_and_next(periods, T0 + timedelta(hours=5))
        assert pair.current.id == 1
        assert pair.next.id == 2

    def test_after_finish_moves_to_upcoming(self):
        periods = [weekly(1, 0), weekly(2, 1), weekly(3, 2)]
        pair = select_current_and_next(periods, T0 + timedelta(days=4))
        assert pair.current.id == 2

    def test_finished_without_successor_stays(self):
        pair = select_current_and_next([weekly(1, 0)], T0 + timedelta(days=4))
        assert pair.current.id == 1
        assert pair.next is None

    def test_only_upcoming_picks_earliest(self):
        periods = [weekly(3, 2), weekly(2, 1)]
        pair = select_current_and_next(periods, T0 - timedelta(days=1))
        assert pair.current.id == 2

    def test_input_order_does_not_matter(self):
        periods = [weekly(2, 1), weekly(1, 0), weekly(3, 2)]
        pair = select_current_and_next(periods, T0 + timedelta(hours=5))
        assert (pair.current.id, pair.next.id) == (1, 2)

    @pytest.mark.asyncio
    async def test_store_selection(self, db):
        first = await make_period(db)
        second = await make_period(db, start=T0 + timedelta(weeks=1))

        pair = await PeriodStore.get_current_and_next_period(db, T0 + timedelta(hours=3))
        assert pair.current.id == first.id
        assert pair.next.id == second.id


class TestStorageFailures:

    @pytest.mark.asyncio
    async def test_update_gives_up_with_transient_failure(self, db, period, monkeypatch):
        def locked(value):
            raise OperationalError("UPDATE matching_periods", {}, Exception("database is locked"))

        monkeypatch.setattr(period_store, "to_naive_utc", locked)

        with pytest.raises(TransientFailureError):
            await PeriodStore.update_period(db, period.id, {"finish": T0 + timedelta(days=5)})

        monkeypatch.undo()
        reloaded = await PeriodStore.get_period(db, period.id)
        assert reloaded.finish == T0 + timedelta(days=3)


class TestBookkeepingColumns:

    @pytest.mark.asyncio
    async def test_timestamps_are_naive_utc(self, db, period):
        await PeriodStore.update_period(db, period.id, {"finish": T0 + timedelta(days=4)})
        reloaded = await PeriodStore.get_period(db, period.id)

        assert reloaded.created_at.tzinfo is None
        assert reloaded.updated_at.tzinfo is None
        assert reloaded.updated_at >= reloaded.created_at
