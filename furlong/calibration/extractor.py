"""Harvest completed races from the form history embedded in a race card.

Every horse on a card carries its recent starts. The same prior race shows
up in several horses' histories, so appearances are grouped by race
identity (track, date, race number) and merged into one record per race.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from furlong.calibration.cards import CardRace, ParsedCard, PastPerformance
from furlong.calibration.schema import (
    DataConfidence,
    HistoricalEntry,
    HistoricalRace,
    RaceSource,
    RaceStatus,
    calculate_implied_probability,
    generate_race_id,
    normalize_date,
    to_surface_code,
)

logger = logging.getLogger(__name__)

# An extracted race must recover at least this share of its field
FULL_FIELD_SHARE = 0.6

# Used by the estimator when a past performance has no field size
DEFAULT_ESTIMATED_FIELD = 8


@dataclass
class ExtractorOptions:
    """Knobs for history extraction."""

    max_pps_per_horse: int = 10
    min_field_size: int = 4
    include_without_odds: bool = True
    min_date: Optional[str] = None  # YYYY-MM-DD, races before this are ignored

    def __post_init__(self):
        if self.max_pps_per_horse < 1:
            raise ValueError("max_pps_per_horse must be at least 1")
        if self.min_field_size < 1:
            raise ValueError("min_field_size must be at least 1")
        if self.min_date:
            self.min_date = normalize_date(self.min_date)


@dataclass
class ExtractionStats:
    total_pps_examined: int = 0
    unique_races_found: int = 0
    duplicates_skipped: int = 0
    incomplete_skipped: int = 0
    races_with_odds: int = 0
    avg_entries_per_race: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_pps_examined": self.total_pps_examined,
            "unique_races_found": self.unique_races_found,
            "duplicates_skipped": self.duplicates_skipped,
            "incomplete_skipped": self.incomplete_skipped,
            "races_with_odds": self.races_with_odds,
            "avg_entries_per_race": self.avg_entries_per_race,
        }


@dataclass
class ExtractionResult:
    races: list[HistoricalRace] = field(default_factory=list)
    stats: ExtractionStats = field(default_factory=ExtractionStats)


@dataclass
class _RaceKey:
    """Full description of a past race, taken from its first appearance."""

    track_code: str
    race_date: str
    race_number: int
    distance: float
    surface: str
    field_size: int
    track_condition: Optional[str] = None
    classification: Optional[str] = None
    purse: Optional[float] = None

    @property
    def race_id(self) -> str:
        return generate_race_id(self.track_code, self.race_date, self.race_number)


@dataclass
class _Appearance:
    horse_name: str
    program_number: int
    finish_position: int
    odds: Optional[float]
    speed_figure: Optional[int]

    @property
    def data_score(self) -> int:
        """Auxiliary data available on this appearance (odds, speed figure)."""
        has_odds = 1 if self.odds is not None and self.odds > 0 else 0
        has_speed = 1 if self.speed_figure is not None and self.speed_figure > 0 else 0
        return has_odds + has_speed


def _race_key(pp: PastPerformance) -> _RaceKey:
    return _RaceKey(
        track_code=pp.track.strip().upper(),
        race_date=normalize_date(pp.date),
        race_number=pp.race_number,
        distance=pp.distance_furlongs,
        surface=to_surface_code(pp.surface).value,
        field_size=pp.field_size,
        track_condition=pp.track_condition,
        classification=pp.classification,
        purse=pp.purse,
    )


def _is_complete(pp: PastPerformance) -> bool:
    return bool(pp.track and pp.date) and pp.finish_position is not None and pp.finish_position > 0


def _deduplicate(appearances: list[_Appearance]) -> list[_Appearance]:
    """Keep one appearance per finish position.

    The appearance with the most auxiliary data wins; equal scores fall back
    to the lowest program number, then horse name, so the outcome does not
    depend on the order horses appear on the card.
    """
    by_position: dict[int, list[_Appearance]] = {}
    for app in appearances:
        by_position.setdefault(app.finish_position, []).append(app)

    kept = []
    for position in sorted(by_position):
        candidates = by_position[position]
        best = min(
            candidates,
            key=lambda a: (-a.data_score, a.program_number, a.horse_name),
        )
        kept.append(best)
    return kept


def _build_race(key: _RaceKey, appearances: list[_Appearance]) -> HistoricalRace:
    entries = []
    for app in appearances:
        odds = app.odds if app.odds is not None and app.odds > 0 else 0.0
        entries.append(HistoricalEntry(
            program_number=app.program_number,
            finish_position=app.finish_position,
            predicted_probability=0.0,  # No model output for history
            implied_probability=calculate_implied_probability(odds),
            final_odds=odds,
            was_winner=app.finish_position == 1,
            was_place=app.finish_position <= 2,
            was_show=app.finish_position <= 3,
            horse_name=app.horse_name,
        ))

    has_odds = any(e.final_odds > 0 for e in entries)
    if not has_odds:
        confidence = DataConfidence.LOW
    elif len(entries) < key.field_size * FULL_FIELD_SHARE:
        confidence = DataConfidence.MEDIUM
    else:
        confidence = DataConfidence.HIGH

    return HistoricalRace(
        id=key.race_id,
        track_code=key.track_code,
        race_date=key.race_date,
        race_number=key.race_number,
        distance=key.distance,
        surface=to_surface_code(key.surface),
        field_size=key.field_size,
        entries=entries,
        source=RaceSource.EXTRACTED,
        confidence=confidence,
        status=RaceStatus.COMPLETE,
        track_condition=key.track_condition,
        classification=key.classification,
        purse=key.purse,
    )


def _finalize_stats(stats: ExtractionStats, races: list[HistoricalRace]) -> None:
    stats.unique_races_found = len(races)
    total_entries = sum(len(r.entries) for r in races)
    stats.avg_entries_per_race = round(total_entries / len(races), 1) if races else 0.0


def extract_historical_races(
    card: ParsedCard, options: Optional[ExtractorOptions] = None,
) -> ExtractionResult:
    """Extract deduplicated completed races from every horse's form history."""
    opts = options or ExtractorOptions()
    stats = ExtractionStats()

    keys: dict[str, _RaceKey] = {}
    grouped: dict[str, list[_Appearance]] = {}

    for race in card.races:
        for horse in race.horses:
            if horse.is_scratched:
                continue

            for pp in horse.past_performances[:opts.max_pps_per_horse]:
                stats.total_pps_examined += 1

                if not _is_complete(pp):
                    stats.incomplete_skipped += 1
                    continue

                race_date = normalize_date(pp.date)
                if opts.min_date and race_date < opts.min_date:
                    continue
                if pp.field_size < opts.min_field_size:
                    continue

                key = _race_key(pp)
                race_id = key.race_id
                if race_id not in keys:
                    keys[race_id] = key
                    grouped[race_id] = []
                grouped[race_id].append(_Appearance(
                    horse_name=horse.horse_name,
                    program_number=horse.program_number,
                    finish_position=pp.finish_position,
                    odds=pp.odds,
                    speed_figure=pp.speed_figure,
                ))

    races = []
    for race_id, appearances in grouped.items():
        unique = _deduplicate(appearances)
        if len(unique) < 2:
            stats.incomplete_skipped += 1
            continue

        stats.duplicates_skipped += len(appearances) - len(unique)

        has_odds = any(a.odds is not None and a.odds > 0 for a in unique)
        if not has_odds and not opts.include_without_odds:
            logger.debug(f"Skipped {race_id}: no odds data")
            continue
        if has_odds:
            stats.races_with_odds += 1

        races.append(_build_race(keys[race_id], unique))

    # Newest first
    races.sort(key=lambda r: r.race_date, reverse=True)
    _finalize_stats(stats, races)

    logger.info(
        f"Extracted {stats.unique_races_found} races from {card.filename or 'card'} "
        f"({stats.total_pps_examined} PPs, {stats.duplicates_skipped} duplicates, "
        f"{stats.incomplete_skipped} incomplete)"
    )
    return ExtractionResult(races=races, stats=stats)


def extract_from_multiple_files(
    cards: list[ParsedCard], options: Optional[ExtractorOptions] = None,
) -> ExtractionResult:
    """Extract from several cards; a race seen twice keeps its fuller version."""
    all_races: dict[str, HistoricalRace] = {}
    stats = ExtractionStats()

    for card in cards:
        result = extract_historical_races(card, options)
        stats.total_pps_examined += result.stats.total_pps_examined
        stats.incomplete_skipped += result.stats.incomplete_skipped
        stats.duplicates_skipped += result.stats.duplicates_skipped

        for race in result.races:
            existing = all_races.get(race.id)
            if existing is None:
                all_races[race.id] = race
                continue
            stats.duplicates_skipped += 1
            if len(race.entries) > len(existing.entries):
                all_races[race.id] = race

    races = sorted(all_races.values(), key=lambda r: r.race_date, reverse=True)
    stats.races_with_odds = sum(1 for r in races if any(e.final_odds > 0 for e in r.entries))
    _finalize_stats(stats, races)
    return ExtractionResult(races=races, stats=stats)


@dataclass
class RaceForLogging:
    """Identity and active runners of a current-card race."""

    race_id: str
    track_code: str
    race_date: str
    race_number: int
    distance: float
    surface: str
    field_size: int
    horses: list[dict] = field(default_factory=list)


def extract_race_for_prediction_logging(race: CardRace) -> RaceForLogging:
    header = race.header
    active = [h for h in race.horses if not h.is_scratched]
    return RaceForLogging(
        race_id=generate_race_id(header.track_code, header.race_date_raw, header.race_number),
        track_code=header.track_code.strip().upper(),
        race_date=normalize_date(header.race_date_raw),
        race_number=header.race_number,
        distance=header.distance_furlongs,
        surface=to_surface_code(header.surface).value,
        field_size=len(active),
        horses=[
            {
                "program_number": h.program_number,
                "horse_name": h.horse_name,
                "morning_line_odds": h.morning_line_decimal,
            }
            for h in active
        ],
    )


def estimate_extractable_races(card: ParsedCard, max_pps_per_horse: int = 10) -> dict:
    """Cheap preview of how many races an extraction would yield."""
    seen: set[str] = set()
    total_entries = 0
    earliest = latest = None

    for race in card.races:
        for horse in race.horses:
            for pp in horse.past_performances[:max_pps_per_horse]:
                if not (pp.track and pp.date and pp.race_number):
                    continue
                pp_date = normalize_date(pp.date)
                key = generate_race_id(pp.track, pp_date, pp.race_number)
                if key in seen:
                    continue
                seen.add(key)
                total_entries += pp.field_size or DEFAULT_ESTIMATED_FIELD
                if earliest is None or pp_date < earliest:
                    earliest = pp_date
                if latest is None or pp_date > latest:
                    latest = pp_date

    estimated_races = len(seen)
    return {
        "estimated_races": estimated_races,
        "estimated_entries": total_entries,
        "date_range": {"earliest": earliest, "latest": latest} if earliest else None,
    }
