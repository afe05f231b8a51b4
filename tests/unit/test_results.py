"""Tests for recording race results and scratches."""

import pytest

from furlong.calibration.results import (
    FinishResult,
    create_winner_only_result,
    parse_finish_results_simple,
    record_multiple_race_results,
    record_race_result,
    record_scratch,
    record_scratches,
    validate_results,
)
from furlong.calibration.schema import RaceStatus


@pytest.fixture
async def pending_race(memory_store, race_builder):
    race = race_builder(probabilities=[0.5, 0.3, 0.2], status=RaceStatus.PENDING)
    race.entries[0].tier = 1
    await memory_store.save_race(race)
    return race


# ──────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────

class TestValidateResults:
    def test_valid(self):
        assert validate_results([FinishResult(1, 1, 3.0), FinishResult(2, 2, 5.0)]) is None

    def test_empty(self):
        assert validate_results([]) == "No results provided"

    def test_no_winner(self):
        assert validate_results([FinishResult(1, 2, 3.0)]) == "Expected exactly 1 winner, found 0"

    def test_two_winners(self):
        error = validate_results([FinishResult(1, 1, 3.0), FinishResult(2, 1, 4.0)])
        assert error == "Expected exactly 1 winner, found 2"

    def test_duplicate_position(self):
        error = validate_results([
            FinishResult(1, 1, 3.0), FinishResult(2, 2, 4.0), FinishResult(3, 2, 9.0),
        ])
        assert error == "Duplicate finish position: 2"

    def test_unplaced_runners_may_share_zero(self):
        assert validate_results([
            FinishResult(1, 1, 3.0), FinishResult(2, 0, 4.0), FinishResult(3, 0, 9.0),
        ]) is None

    def test_duplicate_program_number(self):
        error = validate_results([FinishResult(1, 1, 3.0), FinishResult(1, 2, 4.0)])
        assert error == "Duplicate program number: 1"

    def test_negative_odds(self):
        error = validate_results([FinishResult(1, 1, -1.0)])
        assert "Invalid odds" in error


# ──────────────────────────────────────────────
# Recording
# ──────────────────────────────────────────────

class TestRecordRaceResult:
    @pytest.mark.asyncio
    async def test_missing_runner_marked_scratched(self, memory_store, pending_race):
        """Runners absent from the results are treated as scratched and the race completes."""
        outcome = await record_race_result(memory_store, pending_race.id, [
            FinishResult(1, 1, 3.0),
            FinishResult(2, 2, 5.0),
        ])
        assert outcome.success
        assert outcome.entries_updated == 2

        race = await memory_store.get_race(pending_race.id)
        assert race.status == RaceStatus.COMPLETE
        by_pn = {e.program_number: e for e in race.entries}
        assert by_pn[3].finish_position == 0
        assert not by_pn[3].was_winner
        assert by_pn[1].was_winner and by_pn[1].was_place and by_pn[1].was_show
        assert by_pn[2].was_place and not by_pn[2].was_winner
        assert by_pn[1].final_odds == 3.0
        assert by_pn[1].implied_probability == pytest.approx(0.25)
        assert race.field_size == 2

    @pytest.mark.asyncio
    async def test_winner_info(self, memory_store, pending_race):
        outcome = await record_race_result(memory_store, pending_race.id, [
            FinishResult(1, 1, 3.0), FinishResult(2, 2, 5.0), FinishResult(3, 3, 8.0),
        ])
        assert outcome.winner.program_number == 1
        assert outcome.winner.predicted_probability == 0.5
        assert outcome.winner.matched_top_tier
        assert outcome.winner.was_correct_pick

    @pytest.mark.asyncio
    async def test_longshot_winner_not_a_correct_pick(self, memory_store, pending_race):
        outcome = await record_race_result(memory_store, pending_race.id, [
            FinishResult(3, 1, 30.0), FinishResult(1, 2, 3.0),
        ])
        assert outcome.winner.program_number == 3
        assert not outcome.winner.matched_top_tier
        assert not outcome.winner.was_correct_pick

    @pytest.mark.asyncio
    async def test_unknown_race(self, memory_store):
        outcome = await record_race_result(memory_store, "CD-2024-05-04-R9", [FinishResult(1, 1, 2.0)])
        assert not outcome.success
        assert "not found" in outcome.error

    @pytest.mark.asyncio
    async def test_invalid_results_leave_race_untouched(self, memory_store, pending_race):
        outcome = await record_race_result(memory_store, pending_race.id, [FinishResult(1, 2, 3.0)])
        assert not outcome.success
        race = await memory_store.get_race(pending_race.id)
        assert race.status == RaceStatus.PENDING
        assert all(e.finish_position == 0 for e in race.entries)

    @pytest.mark.asyncio
    async def test_runner_not_entered_rejected(self, memory_store, pending_race):
        outcome = await record_race_result(memory_store, pending_race.id, [
            FinishResult(99, 1, 3.0), FinishResult(1, 2, 5.0),
        ])
        assert not outcome.success
        assert outcome.error == f"Program 99 not entered in {pending_race.id}"
        race = await memory_store.get_race(pending_race.id)
        assert race.status == RaceStatus.PENDING
        assert all(e.finish_position == 0 for e in race.entries)

    @pytest.mark.asyncio
    async def test_complete_race_is_immutable(self, memory_store, pending_race):
        results = [FinishResult(1, 1, 3.0), FinishResult(2, 2, 5.0)]
        await record_race_result(memory_store, pending_race.id, results)
        again = await record_race_result(memory_store, pending_race.id, [
            FinishResult(2, 1, 5.0), FinishResult(1, 2, 3.0),
        ])
        assert not again.success
        assert "already" in again.error
        race = await memory_store.get_race(pending_race.id)
        assert race.entries[0].was_winner

    @pytest.mark.asyncio
    async def test_multiple(self, memory_store, pending_race):
        summary = await record_multiple_race_results(memory_store, [
            (pending_race.id, [FinishResult(2, 1, 4.0)]),
            ("NOPE-2024-01-01-R1", [FinishResult(1, 1, 4.0)]),
        ])
        assert summary["successful"] == 1
        assert summary["failed"] == 1


class TestResultHelpers:
    def test_parse_simple(self):
        results = parse_finish_results_simple([4, 2, 7], [1, 2, 3], [2.5, 4.0, 9.0])
        assert results[0] == FinishResult(4, 1, 2.5)
        assert len(results) == 3

    def test_parse_simple_length_mismatch(self):
        with pytest.raises(ValueError):
            parse_finish_results_simple([1, 2], [1], [2.0, 3.0])

    def test_winner_only(self):
        results = create_winner_only_result(5, 4.0, [(1, 3.0), (5, 4.0), (7, 12.0)])
        assert [(r.program_number, r.finish_position) for r in results] == [(5, 1), (1, 2), (7, 3)]
        assert validate_results(results) is None


# ──────────────────────────────────────────────
# Scratches
# ──────────────────────────────────────────────

class TestRecordScratch:
    @pytest.mark.asyncio
    async def test_pending_scratch_renormalizes(self, memory_store, pending_race):
        outcome = await record_scratch(memory_store, pending_race.id, 1)
        assert outcome.success
        race = await memory_store.get_race(pending_race.id)
        by_pn = {e.program_number: e.predicted_probability for e in race.entries}
        assert by_pn[1] == 0.0
        assert by_pn[2] == pytest.approx(0.6)
        assert by_pn[3] == pytest.approx(0.4)
        assert race.field_size == 2

    @pytest.mark.asyncio
    async def test_complete_scratch_clears_finish(self, memory_store, race_builder):
        race = race_builder(probabilities=[0.5, 0.3, 0.2])
        await memory_store.save_race(race)
        outcome = await record_scratch(memory_store, race.id, 3)
        assert outcome.success
        stored = await memory_store.get_race(race.id)
        assert stored.entries[2].finish_position == 0
        assert stored.entries[2].predicted_probability == 0.2
        assert stored.field_size == 2

    @pytest.mark.asyncio
    async def test_unknown_runner(self, memory_store, pending_race):
        outcome = await record_scratch(memory_store, pending_race.id, 9)
        assert not outcome.success
        assert "not entered" in outcome.error

    @pytest.mark.asyncio
    async def test_unknown_race(self, memory_store):
        outcome = await record_scratch(memory_store, "CD-2030-01-01-R1", 1)
        assert not outcome.success

    @pytest.mark.asyncio
    async def test_batch_stops_at_first_failure(self, memory_store, pending_race):
        outcome = await record_scratches(memory_store, pending_race.id, [3, 9, 2])
        assert not outcome.success
        race = await memory_store.get_race(pending_race.id)
        by_pn = {e.program_number: e.predicted_probability for e in race.entries}
        assert by_pn[3] == 0.0
        assert by_pn[2] > 0
