"""Readiness checks, filtering and descriptive statistics over the dataset."""

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Optional

from furlong.calibration.schema import (
    CalibrationDataset,
    DataConfidence,
    HistoricalEntry,
    HistoricalRace,
    RaceSource,
    RaceStatus,
    SurfaceCode,
)
from furlong.calibration.stats import bucket_label, get_bucket_index, mean
from furlong.calibration.storage import CalibrationStore, DateLike, date_key

logger = logging.getLogger(__name__)

# Completed races needed before fitting
CALIBRATION_THRESHOLD = 500

# Completed races needed for partial analysis views
MINIMUM_CALIBRATION_RACES = 100

SCORE_BUCKET_WIDTH = 20
MAX_SCORE = 380
TIERS = (0, 1, 2, 3)

# Tolerance on the per-race probability sum before a warning is raised
PROBABILITY_SUM_TOLERANCE = 0.1

CONFIDENCE_WEIGHTS = {
    DataConfidence.HIGH: 1.0,
    DataConfidence.MEDIUM: 0.5,
    DataConfidence.LOW: 0.25,
}


@dataclass
class CalibrationFilter:
    """Filters for :meth:`DatasetManager.get_filtered_races`; None means no filter."""

    track_codes: Optional[list[str]] = None
    start_date: Optional[DateLike] = None
    end_date: Optional[DateLike] = None
    surface: Optional[SurfaceCode] = None
    min_distance: Optional[float] = None
    max_distance: Optional[float] = None
    min_field_size: Optional[int] = None
    max_field_size: Optional[int] = None
    source: Optional[RaceSource] = None


@dataclass
class DatasetValidation:
    valid: bool = True
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class DatasetManager:
    """Read-side views over a :class:`CalibrationStore`."""

    def __init__(
        self,
        store: CalibrationStore,
        calibration_threshold: int = CALIBRATION_THRESHOLD,
        minimum_races: int = MINIMUM_CALIBRATION_RACES,
    ):
        self.store = store
        self.calibration_threshold = calibration_threshold
        self.minimum_races = minimum_races

    # ──────────────────────────────────────────────
    # Readiness
    # ──────────────────────────────────────────────

    async def get_dataset_stats(self) -> CalibrationDataset:
        return await self.store.get_dataset_summary()

    async def completed_race_count(self) -> int:
        return await self.store.count_races(RaceStatus.COMPLETE)

    async def is_calibration_ready(self) -> bool:
        """True once enough races have results to fit on."""
        return await self.completed_race_count() >= self.calibration_threshold

    async def has_minimum_data(self) -> bool:
        return await self.completed_race_count() >= self.minimum_races

    async def get_races_needed(self) -> int:
        return max(0, self.calibration_threshold - await self.completed_race_count())

    # ──────────────────────────────────────────────
    # Filtering
    # ──────────────────────────────────────────────

    async def get_races_by_track(self, track_code: str) -> list[HistoricalRace]:
        return await self.store.get_races_by_track(track_code)

    async def get_races_by_date_range(self, start: DateLike, end: DateLike) -> list[HistoricalRace]:
        return await self.store.get_races_by_date_range(start, end)

    async def get_filtered_races(self, filters: CalibrationFilter) -> list[HistoricalRace]:
        races = await self.store.get_all_races()

        if filters.track_codes:
            tracks = {t.strip().upper() for t in filters.track_codes}
            races = [r for r in races if r.track_code in tracks]
        if filters.start_date is not None:
            start = date_key(filters.start_date)
            races = [r for r in races if r.race_date >= start]
        if filters.end_date is not None:
            end = date_key(filters.end_date)
            races = [r for r in races if r.race_date <= end]
        if filters.surface is not None:
            races = [r for r in races if r.surface == filters.surface]
        if filters.min_distance is not None:
            races = [r for r in races if r.distance >= filters.min_distance]
        if filters.max_distance is not None:
            races = [r for r in races if r.distance <= filters.max_distance]
        if filters.min_field_size is not None:
            races = [r for r in races if r.field_size >= filters.min_field_size]
        if filters.max_field_size is not None:
            races = [r for r in races if r.field_size <= filters.max_field_size]
        if filters.source is not None:
            races = [r for r in races if r.source == filters.source]

        return races

    # ──────────────────────────────────────────────
    # Grouping
    # ──────────────────────────────────────────────

    async def get_all_completed_entries(self) -> list[HistoricalEntry]:
        """Entries that actually ran in races with results."""
        races = await self.store.get_races_by_status(RaceStatus.COMPLETE)
        return [e for race in races for e in race.active_entries()]

    async def group_by_probability_bucket(
        self, bucket_size: float = 0.1,
    ) -> dict[str, list[HistoricalEntry]]:
        """Entries keyed by predicted-probability bucket (``"0.10-0.20"``)."""
        num_buckets = max(1, math.ceil(round(1.0 / bucket_size, 9)))
        buckets: dict[str, list[HistoricalEntry]] = {
            bucket_label(i, bucket_size): [] for i in range(num_buckets)
        }
        for entry in await self.get_all_completed_entries():
            idx = get_bucket_index(entry.predicted_probability, num_buckets)
            buckets[bucket_label(idx, bucket_size)].append(entry)
        return buckets

    async def group_by_score_bucket(
        self, bucket_size: int = SCORE_BUCKET_WIDTH, max_score: int = MAX_SCORE,
    ) -> dict[str, list[HistoricalEntry]]:
        """Entries keyed by final-score bucket (``"200-220"``)."""
        buckets: dict[str, list[HistoricalEntry]] = {
            f"{start}-{start + bucket_size}": []
            for start in range(0, max_score, bucket_size)
        }
        for entry in await self.get_all_completed_entries():
            start = int(entry.final_score // bucket_size) * bucket_size
            buckets.setdefault(f"{start}-{start + bucket_size}", []).append(entry)
        return buckets

    async def group_by_tier(self) -> dict[int, list[HistoricalEntry]]:
        buckets: dict[int, list[HistoricalEntry]] = {tier: [] for tier in TIERS}
        for entry in await self.get_all_completed_entries():
            buckets.setdefault(entry.tier, []).append(entry)
        return buckets

    # ──────────────────────────────────────────────
    # Statistics
    # ──────────────────────────────────────────────

    async def get_bucket_win_rates(self, bucket_size: float = 0.1) -> list[dict]:
        """Predicted vs actual win rate for each populated probability bucket."""
        rows = []
        for label, entries in (await self.group_by_probability_bucket(bucket_size)).items():
            if not entries:
                continue
            wins = sum(1 for e in entries if e.was_winner)
            rows.append({
                "bucket": label,
                "predicted": round(mean([e.predicted_probability for e in entries]), 4),
                "actual": round(wins / len(entries), 4),
                "count": len(entries),
                "wins": wins,
            })
        return sorted(rows, key=lambda r: r["bucket"])

    async def get_tier_stats(self) -> list[dict]:
        """Per-tier strike rate and flat $1 win-bet ROI."""
        rows = []
        for tier, entries in sorted((await self.group_by_tier()).items()):
            if not entries:
                continue
            winners = [e for e in entries if e.was_winner]
            staked = len(entries)
            # Odds-to-1 plus the returned stake
            returned = sum(e.final_odds + 1 for e in winners)
            rows.append({
                "tier": tier,
                "count": staked,
                "wins": len(winners),
                "win_rate": round(len(winners) / staked, 4),
                "avg_score": round(mean([e.final_score for e in entries]), 1),
                "avg_odds": round(mean([e.final_odds for e in entries]), 2),
                "roi": round((returned - staked) / staked * 100, 1),
            })
        return rows

    async def get_surface_stats(self) -> dict[str, dict]:
        """Race counts, field sizes and winning odds by surface (completed races)."""
        totals = {s: {"races": 0, "entries": 0, "field": 0, "win_odds": 0.0, "wins": 0}
                  for s in SurfaceCode}
        for race in await self.store.get_races_by_status(RaceStatus.COMPLETE):
            t = totals[race.surface]
            t["races"] += 1
            t["entries"] += len(race.entries)
            t["field"] += race.field_size
            winner = next((e for e in race.entries if e.was_winner), None)
            if winner:
                t["win_odds"] += winner.final_odds
                t["wins"] += 1

        return {
            surface.value: {
                "race_count": t["races"],
                "entry_count": t["entries"],
                "avg_field_size": round(t["field"] / t["races"], 1),
                "avg_winning_odds": round(t["win_odds"] / t["wins"], 2) if t["wins"] else 0.0,
            }
            for surface, t in totals.items() if t["races"]
        }

    async def get_data_quality_summary(self) -> dict:
        races = await self.store.get_all_races()
        completed = [r for r in races if r.status == RaceStatus.COMPLETE]
        pending = len(races) - len(completed)

        weights = [CONFIDENCE_WEIGHTS.get(r.confidence, 0.5) for r in races]
        return {
            "total_races": len(races),
            "completed_races": len(completed),
            "pending_races": pending,
            "races_with_predictions": sum(
                1 for r in races if any(e.predicted_probability > 0 for e in r.entries)
            ),
            "races_with_odds": sum(1 for r in races if any(e.final_odds > 0 for e in r.entries)),
            "avg_confidence": round(mean(weights), 3),
            "is_ready": len(completed) >= self.calibration_threshold,
            "readiness_percentage": round(
                min(100.0, len(completed) / self.calibration_threshold * 100), 1
            ),
        }

    async def get_random_sample(
        self, count: int = 10, rng: Optional[random.Random] = None,
    ) -> list[HistoricalRace]:
        completed = await self.store.get_races_by_status(RaceStatus.COMPLETE)
        if len(completed) <= count:
            return completed
        return (rng or random.Random()).sample(completed, count)

    async def validate_dataset(self) -> DatasetValidation:
        """Integrity report; problems are listed, never raised."""
        result = DatasetValidation()

        for race in await self.store.get_all_races():
            numbers = [e.program_number for e in race.entries]
            if len(set(numbers)) != len(numbers):
                result.issues.append(f"Race {race.id}: Duplicate program numbers")

            if race.status == RaceStatus.COMPLETE:
                winners = len(race.winners())
                if winners != 1:
                    result.issues.append(f"Race {race.id}: Has {winners} winners (expected 1)")

            total = sum(e.predicted_probability for e in race.entries)
            if total == 0:
                result.warnings.append(f"Race {race.id}: No predictions logged")
            elif abs(total - 1.0) > PROBABILITY_SUM_TOLERANCE:
                result.warnings.append(
                    f"Race {race.id}: Probabilities sum to {total:.2f} (expected ~1.0)"
                )

        result.valid = not result.issues
        if result.issues:
            logger.warning(f"Dataset validation found {len(result.issues)} issues")
        return result
