"""Merge actual race results into pending prediction records."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from furlong.calibration.predictions import normalize_probabilities
from furlong.calibration.schema import (
    HistoricalEntry,
    RaceStatus,
    calculate_implied_probability,
)
from furlong.calibration.storage import CalibrationStore

logger = logging.getLogger(__name__)

# A winner scoring at least this is counted as a correct pick even outside tier 1
CORRECT_PICK_MIN_SCORE = 180


@dataclass
class FinishResult:
    program_number: int
    finish_position: int  # 0 = did not finish / scratched
    final_odds: float


@dataclass
class WinnerInfo:
    program_number: int
    horse_name: Optional[str]
    final_odds: float
    predicted_probability: float
    matched_top_tier: bool
    was_correct_pick: bool


@dataclass
class RecordResultOutcome:
    success: bool
    race_id: str
    entries_updated: int = 0
    winner: Optional[WinnerInfo] = None
    error: Optional[str] = None


@dataclass
class ScratchOutcome:
    success: bool
    error: Optional[str] = None


def validate_results(results: list[FinishResult]) -> Optional[str]:
    """Return an error message for malformed results, or None."""
    if not results:
        return "No results provided"

    winners = sum(1 for r in results if r.finish_position == 1)
    if winners != 1:
        return f"Expected exactly 1 winner, found {winners}"

    positions: set[int] = set()
    for r in results:
        if r.finish_position > 0:
            if r.finish_position in positions:
                return f"Duplicate finish position: {r.finish_position}"
            positions.add(r.finish_position)

    program_numbers: set[int] = set()
    for r in results:
        if r.program_number in program_numbers:
            return f"Duplicate program number: {r.program_number}"
        program_numbers.add(r.program_number)

    for r in results:
        if r.final_odds < 0:
            return f"Invalid odds for program {r.program_number}: {r.final_odds}"

    return None


def _clear_outcome(entry: HistoricalEntry) -> None:
    entry.finish_position = 0
    entry.was_winner = False
    entry.was_place = False
    entry.was_show = False


async def record_race_result(
    store: CalibrationStore, race_id: str, results: list[FinishResult],
) -> RecordResultOutcome:
    """Complete a pending race with its finishing order and final odds.

    Runners missing from ``results`` are treated as scratched. Nothing is
    written when the results are invalid.
    """
    race = await store.get_race(race_id)
    if race is None:
        logger.warning(f"Results for unknown race {race_id}")
        return RecordResultOutcome(
            success=False,
            race_id=race_id,
            error=f"Race {race_id} not found in database. Must log predictions first.",
        )

    if race.status == RaceStatus.COMPLETE:
        return RecordResultOutcome(
            success=False,
            race_id=race_id,
            error=f"Race {race_id} already has results recorded",
        )

    error = validate_results(results)
    if error:
        logger.warning(f"Invalid results for {race_id}: {error}")
        return RecordResultOutcome(success=False, race_id=race_id, error=error)

    entered = {e.program_number for e in race.entries}
    unknown = sorted({r.program_number for r in results} - entered)
    if unknown:
        error = f"Program {unknown[0]} not entered in {race_id}"
        logger.warning(f"Invalid results for {race_id}: {error}")
        return RecordResultOutcome(success=False, race_id=race_id, error=error)

    by_program = {r.program_number: r for r in results}
    entries_updated = 0
    winner = None

    for entry in race.entries:
        result = by_program.get(entry.program_number)
        if result is None:
            _clear_outcome(entry)
            continue

        entries_updated += 1
        entry.finish_position = result.finish_position
        entry.final_odds = result.final_odds
        entry.implied_probability = calculate_implied_probability(result.final_odds)
        entry.was_winner = result.finish_position == 1
        entry.was_place = 0 < result.finish_position <= 2
        entry.was_show = 0 < result.finish_position <= 3

        if entry.was_winner:
            winner = WinnerInfo(
                program_number=entry.program_number,
                horse_name=entry.horse_name,
                final_odds=result.final_odds,
                predicted_probability=entry.predicted_probability,
                matched_top_tier=entry.tier == 1,
                was_correct_pick=entry.tier == 1 or entry.base_score >= CORRECT_PICK_MIN_SCORE,
            )

    updated = await store.update_race(
        race_id,
        entries=race.entries,
        status=RaceStatus.COMPLETE,
        field_size=len(results),
    )
    if updated is None:
        return RecordResultOutcome(
            success=False, race_id=race_id, error="Failed to update race record",
        )

    logger.info(
        f"Recorded results for {race_id}: {entries_updated} runners, "
        f"winner #{winner.program_number if winner else '?'}"
    )
    return RecordResultOutcome(
        success=True, race_id=race_id, entries_updated=entries_updated, winner=winner,
    )


async def record_multiple_race_results(
    store: CalibrationStore, race_results: list[tuple[str, list[FinishResult]]],
) -> dict:
    outcomes = []
    successful = failed = 0
    for race_id, results in race_results:
        outcome = await record_race_result(store, race_id, results)
        outcomes.append(outcome)
        if outcome.success:
            successful += 1
        else:
            failed += 1
    return {"successful": successful, "failed": failed, "outcomes": outcomes}


def parse_finish_results_simple(
    program_numbers: list[int], finish_order: list[int], final_odds: list[float],
) -> list[FinishResult]:
    """Zip three parallel lists into results."""
    if not len(program_numbers) == len(finish_order) == len(final_odds):
        raise ValueError("program_numbers, finish_order and final_odds must have equal length")
    return [
        FinishResult(program_number=pn, finish_position=pos, final_odds=odds)
        for pn, pos, odds in zip(program_numbers, finish_order, final_odds)
    ]


def create_winner_only_result(
    winner_program_number: int,
    winner_odds: float,
    other_entries: Optional[list[tuple[int, float]]] = None,
) -> list[FinishResult]:
    """Results when only the winner is known; other runners get filler positions 2, 3, ..."""
    results = [FinishResult(winner_program_number, 1, winner_odds)]
    position = 2
    for program_number, odds in other_entries or []:
        if program_number == winner_program_number:
            continue
        results.append(FinishResult(program_number, position, odds))
        position += 1
    return results


async def record_scratch(
    store: CalibrationStore, race_id: str, program_number: int,
) -> ScratchOutcome:
    """Mark one runner as scratched.

    Before the race the runner's prediction is dropped and the rest of the
    field renormalized; after it, the runner's finish is cleared.
    """
    race = await store.get_race(race_id)
    if race is None:
        return ScratchOutcome(success=False, error=f"Race {race_id} not found")

    target = next((e for e in race.entries if e.program_number == program_number), None)
    if target is None:
        return ScratchOutcome(
            success=False, error=f"Program {program_number} not entered in {race_id}",
        )

    _clear_outcome(target)

    if race.status == RaceStatus.PENDING:
        target.predicted_probability = 0.0
        live = [e for e in race.entries if e.predicted_probability > 0]
        for entry, p in zip(live, normalize_probabilities([e.predicted_probability for e in live])):
            entry.predicted_probability = p
        field_size = len(live)
    else:
        field_size = len(race.active_entries())

    updated = await store.update_race(race_id, entries=race.entries, field_size=field_size)
    if updated is None:
        return ScratchOutcome(success=False, error="Failed to update race record")

    logger.info(f"Recorded scratch of #{program_number} in {race_id}")
    return ScratchOutcome(success=True)


async def record_scratches(
    store: CalibrationStore, race_id: str, program_numbers: list[int],
) -> ScratchOutcome:
    for program_number in program_numbers:
        outcome = await record_scratch(store, race_id, program_number)
        if not outcome.success:
            return outcome
    return ScratchOutcome(success=True)
