"""
Tests for generation status handling and the monotone credit clamp.
"""

from unittest.mock import AsyncMock

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy.dialects import postgresql

from app.exceptions import InvalidStatusError
from app.models.api import GenerationStatus
from app.services.generations import GenerationService, clamp_credits, normalize_status
from conftest import create_mock_generation, make_result


class TestNormalizeStatus:
    """Status allow-list."""

    @pytest.mark.parametrize("status", list(GenerationStatus))
    def test_known_statuses(self, status: GenerationStatus):
        assert normalize_status(status.value) == status

    def test_case_and_whitespace(self):
        assert normalize_status("  Completed ") == GenerationStatus.COMPLETED

    @pytest.mark.parametrize("raw", ["done", "", "paid", "workspace_detected"])
    def test_rejects_unknown(self, raw: str):
        with pytest.raises(InvalidStatusError) as exc_info:
            normalize_status(raw)
        assert exc_info.value.status == raw


class TestClampCredits:
    """credits_earned never decreases and never exceeds credits_requested."""

    def test_lower_report_keeps_current(self):
        assert clamp_credits(current=50, reported=30, requested=60) == 50

    def test_report_above_requested_is_capped(self):
        assert clamp_credits(current=50, reported=80, requested=60) == 60

    def test_normal_progress(self):
        assert clamp_credits(current=10, reported=40, requested=60) == 40

    @given(
        st.integers(min_value=0, max_value=10_000),
        st.integers(min_value=0, max_value=20_000),
        st.integers(min_value=1, max_value=10_000),
    )
    def test_properties(self, current: int, reported: int, requested: int):
        current = min(current, requested)
        clamped = clamp_credits(current, reported, requested)
        assert current <= clamped <= requested

    @given(st.lists(st.integers(min_value=0, max_value=2_000), min_size=1, max_size=20))
    def test_out_of_order_reports_are_monotone(self, reports: list[int]):
        """Applying reports in any order never moves the value backwards."""
        value = 0
        for reported in reports:
            updated = clamp_credits(value, reported, 1000)
            assert updated >= value
            value = updated
        assert value == min(max(reports), 1000)


class TestApplyStatus:
    """GenerationService.apply_status."""

    async def test_unknown_farm_id(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(scalar=None))

        result = await GenerationService(db_session).apply_status("farm-missing", "running")

        assert result is None
        db_session.commit.assert_not_awaited()

    async def test_invalid_status_raises(self, db_session: AsyncMock):
        with pytest.raises(InvalidStatusError):
            await GenerationService(db_session).apply_status("farm-1", "bogus")
        db_session.execute.assert_not_awaited()

    async def test_terminal_row_without_new_data_is_untouched(self, db_session: AsyncMock):
        """A terminal generation keeps its status; with nothing else to write no UPDATE runs."""
        current = create_mock_generation(status=GenerationStatus.COMPLETED)
        db_session.execute = AsyncMock(return_value=make_result(scalar=current))

        result = await GenerationService(db_session).apply_status(
            current.farm_id, GenerationStatus.RUNNING
        )

        assert result is current
        assert db_session.execute.await_count == 1
        db_session.commit.assert_not_awaited()

    async def test_update_returns_refreshed_row(self, db_session: AsyncMock):
        current = create_mock_generation(status=GenerationStatus.WAITING_INVITE)
        updated = create_mock_generation(
            generation_id=current.id, status=GenerationStatus.RUNNING, credits_earned=200
        )
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=current), make_result(scalar=updated)]
        )

        result = await GenerationService(db_session).apply_status(
            current.farm_id, "running", credits_earned=200
        )

        assert result is updated
        db_session.commit.assert_awaited_once()

    async def test_waiting_invite_keeps_first_sighting(self, db_session: AsyncMock):
        """Repeated waiting_invite polls must not move the invite timeout forward."""
        current = create_mock_generation(status=GenerationStatus.WAITING_INVITE)
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=current), make_result(scalar=current)]
        )

        await GenerationService(db_session).apply_status(current.farm_id, "waiting_invite")

        stmt = db_session.execute.await_args_list[1].args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "waiting_since=coalesce(generations.waiting_since" in sql

    async def test_other_statuses_leave_waiting_since_alone(self, db_session: AsyncMock):
        current = create_mock_generation(status=GenerationStatus.WAITING_INVITE)
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=current), make_result(scalar=current)]
        )

        await GenerationService(db_session).apply_status(current.farm_id, "running")

        stmt = db_session.execute.await_args_list[1].args[0]
        assert "waiting_since" not in str(stmt.compile(dialect=postgresql.dialect()))


class TestQueuePosition:
    async def test_position_is_one_based(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=make_result(scalar=2))
        generation = create_mock_generation(status=GenerationStatus.QUEUED)

        assert await GenerationService(db_session).queue_position(generation) == 3
