"""Log model predictions before a race is run.

Each logged race is stored as ``pending_result`` with a normalized raw
win probability per runner; the results recorder completes it later.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from furlong.calibration.cards import CardRace, ScoredHorse
from furlong.calibration.schema import (
    DataConfidence,
    HistoricalEntry,
    HistoricalRace,
    RaceSource,
    RaceStatus,
    SurfaceCode,
    calculate_implied_probability,
    generate_race_id,
    normalize_date,
    to_surface_code,
)
from furlong.calibration.storage import CalibrationStore

logger = logging.getLogger(__name__)

# Scorer's maximum base score
MAX_BASE_SCORE = 323

# Logistic steepness around the middle of the score range
LOGISTIC_STEEPNESS = 8.0

# Field size the logistic curve is tuned for
REFERENCE_FIELD_SIZE = 8

MIN_RAW_PROBABILITY = 0.01
MAX_RAW_PROBABILITY = 0.95

# Odds assumed when neither final nor morning-line odds exist
DEFAULT_ODDS = 10.0

# Tier thresholds
TIER1_MIN_SCORE = 200
TIER1_MAX_ODDS = 10
TIER2_MAX_RANK = 3
TIER2_MIN_SCORE = 165
TIER3_MIN_SCORE = 140
TIER3_VALUE_MULTIPLE = 1.5


def score_to_probability(base_score: float, field_size: int) -> float:
    """Map a base score to a raw win probability.

    The score is squashed through a logistic centred on half the maximum,
    then scaled by ``8 / field_size`` so bigger fields mean lower chances.
    Result is bounded to [0.01, 0.95].
    """
    normalized = min(base_score, MAX_BASE_SCORE) / MAX_BASE_SCORE
    logistic = 1.0 / (1.0 + math.exp(-LOGISTIC_STEEPNESS * (normalized - 0.5)))
    raw = logistic * (REFERENCE_FIELD_SIZE / max(field_size, 1))
    return min(MAX_RAW_PROBABILITY, max(MIN_RAW_PROBABILITY, raw))


def normalize_probabilities(probabilities: list[float]) -> list[float]:
    """Scale to sum to 1; an all-zero field becomes uniform."""
    if not probabilities:
        return []
    total = sum(probabilities)
    if total <= 0:
        return [1.0 / len(probabilities)] * len(probabilities)
    return [p / total for p in probabilities]


def determine_tier(score: float, rank: int, odds: float, field_size: int) -> int:
    """Betting tier: 1 chalk, 2 alternative, 3 value, 0 pass.

    The value rule compares the market odds with the fair odds implied by
    the score for this field size.
    """
    if rank == 1 and score >= TIER1_MIN_SCORE and odds < TIER1_MAX_ODDS:
        return 1

    if rank <= TIER2_MAX_RANK and score >= TIER2_MIN_SCORE:
        return 2

    expected_odds = 1.0 / score_to_probability(score, field_size) - 1.0
    if odds > expected_odds * TIER3_VALUE_MULTIPLE and score >= TIER3_MIN_SCORE:
        return 3

    return 0


@dataclass
class PredictionLogOptions:
    track_condition: str = "fast"
    overwrite_existing: bool = False
    notes: Optional[str] = None


@dataclass
class PredictionLogResult:
    race_id: str
    is_new: bool = False
    entries_logged: int = 0
    warnings: list[str] = field(default_factory=list)


def _active(scored_horses: list[ScoredHorse]) -> list[ScoredHorse]:
    return [sh for sh in scored_horses if not sh.horse.is_scratched]


def _build_entries(active: list[ScoredHorse]) -> list[HistoricalEntry]:
    field_size = len(active)
    probabilities = normalize_probabilities(
        [score_to_probability(sh.base_score, field_size) for sh in active]
    )

    entries = []
    for sh, probability in zip(active, probabilities):
        horse = sh.horse
        # Morning line stands in until final odds are recorded
        odds = horse.morning_line_decimal or DEFAULT_ODDS
        entries.append(HistoricalEntry(
            program_number=horse.program_number,
            finish_position=0,
            predicted_probability=probability,
            implied_probability=calculate_implied_probability(odds),
            final_odds=odds,
            base_score=sh.base_score,
            final_score=sh.total_score,
            tier=determine_tier(sh.base_score, sh.rank, odds, field_size),
            horse_name=horse.horse_name,
            morning_line_odds=horse.morning_line_decimal or None,
        ))
    return entries


async def _update_pending(
    store: CalibrationStore, existing: HistoricalRace, active: list[ScoredHorse],
) -> Optional[HistoricalRace]:
    """Refresh predictions on a pending race, keeping runners we have no score for."""
    field_size = len(active)
    probabilities = normalize_probabilities(
        [score_to_probability(sh.base_score, field_size) for sh in active]
    )
    scored = {
        sh.horse.program_number: (sh, p) for sh, p in zip(active, probabilities)
    }

    entries = []
    for entry in existing.entries:
        match = scored.get(entry.program_number)
        if match is None:
            entries.append(entry)
            continue
        sh, probability = match
        entry.predicted_probability = probability
        entry.base_score = sh.base_score
        entry.final_score = sh.total_score
        entry.tier = determine_tier(sh.base_score, sh.rank, entry.final_odds, field_size)
        entries.append(entry)

    return await store.update_race(existing.id, entries=entries, field_size=field_size)


async def log_predictions(
    store: CalibrationStore,
    race: CardRace,
    scored_horses: list[ScoredHorse],
    options: Optional[PredictionLogOptions] = None,
) -> PredictionLogResult:
    """Store raw predictions for ``race`` as a pending historical race."""
    opts = options or PredictionLogOptions()
    header = race.header
    race_id = generate_race_id(header.track_code, header.race_date_raw, header.race_number)
    active = _active(scored_horses)

    existing = await store.get_race(race_id)
    if existing and not opts.overwrite_existing:
        if existing.status != RaceStatus.PENDING:
            logger.debug(f"Skipped {race_id}: results already recorded")
            return PredictionLogResult(
                race_id=race_id,
                warnings=["Race already exists with results - skipping"],
            )
        if not active:
            return PredictionLogResult(race_id=race_id, warnings=["No active horses in race"])
        updated = await _update_pending(store, existing, active)
        if updated is None:
            return PredictionLogResult(race_id=race_id, warnings=["Failed to update race"])
        logger.info(f"Updated predictions for pending race {race_id}")
        return PredictionLogResult(
            race_id=race_id,
            entries_logged=len(updated.entries),
            warnings=["Updated existing pending race with new predictions"],
        )

    if not active:
        return PredictionLogResult(race_id=race_id, warnings=["No active horses in race"])

    entries = _build_entries(active)
    historical = HistoricalRace(
        id=race_id,
        track_code=header.track_code.strip().upper(),
        race_date=normalize_date(header.race_date_raw),
        race_number=header.race_number,
        distance=header.distance_furlongs,
        surface=to_surface_code(header.surface),
        field_size=len(active),
        entries=entries,
        source=RaceSource.SELF_LOGGED,
        confidence=DataConfidence.HIGH,
        status=RaceStatus.PENDING,
        track_condition=opts.track_condition,
        classification=header.race_type,
        purse=header.purse,
        notes=opts.notes,
    )

    if not await store.save_race(historical):
        return PredictionLogResult(race_id=race_id, warnings=["Failed to save race"])

    top_score = max(sh.base_score for sh in active)
    logger.info(f"Logged predictions for {race_id}: {len(entries)} runners, top score {top_score}")
    return PredictionLogResult(race_id=race_id, is_new=True, entries_logged=len(entries))


async def log_multiple_predictions(
    store: CalibrationStore,
    races: list[tuple[CardRace, list[ScoredHorse]]],
    options: Optional[PredictionLogOptions] = None,
) -> dict:
    """Log several races; returns logged/skipped counts and per-race results."""
    results = []
    logged = skipped = 0
    for race, scored_horses in races:
        result = await log_predictions(store, race, scored_horses, options)
        results.append(result)
        if result.is_new or result.entries_logged > 0:
            logged += 1
        else:
            skipped += 1
    return {"logged": logged, "skipped": skipped, "results": results}


async def has_predictions_logged(
    store: CalibrationStore, track_code: str, race_date: str, race_number: int,
) -> bool:
    return await store.race_exists(generate_race_id(track_code, race_date, race_number))


async def get_predictions(
    store: CalibrationStore, track_code: str, race_date: str, race_number: int,
) -> Optional[HistoricalRace]:
    return await store.get_race(generate_race_id(track_code, race_date, race_number))


@dataclass
class SimpleEntry:
    """Minimal per-runner input for :func:`log_simple_predictions`."""

    program_number: int
    horse_name: str
    base_score: float
    final_score: float
    morning_line: float


async def log_simple_predictions(
    store: CalibrationStore,
    track_code: str,
    race_date: str,
    race_number: int,
    distance: float,
    surface: SurfaceCode,
    entries: list[SimpleEntry],
) -> Optional[str]:
    """Log predictions from bare scores; rank is derived from base score."""
    if not entries:
        return None

    race_id = generate_race_id(track_code, race_date, race_number)
    field_size = len(entries)
    probabilities = normalize_probabilities(
        [score_to_probability(e.base_score, field_size) for e in entries]
    )
    ranked = sorted(entries, key=lambda e: e.base_score, reverse=True)
    ranks = {e.program_number: i + 1 for i, e in enumerate(ranked)}

    historical_entries = [
        HistoricalEntry(
            program_number=e.program_number,
            predicted_probability=p,
            implied_probability=calculate_implied_probability(e.morning_line),
            final_odds=e.morning_line,
            base_score=e.base_score,
            final_score=e.final_score,
            tier=determine_tier(
                e.base_score, ranks.get(e.program_number, field_size), e.morning_line, field_size
            ),
            horse_name=e.horse_name,
            morning_line_odds=e.morning_line,
        )
        for e, p in zip(entries, probabilities)
    ]

    race = HistoricalRace(
        id=race_id,
        track_code=track_code.strip().upper(),
        race_date=normalize_date(race_date),
        race_number=race_number,
        distance=distance,
        surface=surface,
        field_size=field_size,
        entries=historical_entries,
        source=RaceSource.SELF_LOGGED,
        confidence=DataConfidence.HIGH,
        status=RaceStatus.PENDING,
    )
    if not await store.save_race(race):
        return None
    return race_id
