"""Tests for dataset readiness, filtering and statistics."""

import random

import pytest

from furlong.calibration.dataset import CalibrationFilter, DatasetManager
from furlong.calibration.schema import DataConfidence, RaceSource, RaceStatus, SurfaceCode


@pytest.fixture
def manager(memory_store):
    return DatasetManager(memory_store)


@pytest.fixture
async def mixed_dataset(memory_store, race_builder):
    races = [
        race_builder(1, track="CD", race_date="2024-05-04"),
        race_builder(2, track="CD", race_date="2024-05-11", surface=SurfaceCode.TURF, distance=8.5),
        race_builder(3, track="SAR", race_date="2024-08-01", source=RaceSource.EXTRACTED),
        race_builder(4, track="SAR", race_date="2024-08-02", status=RaceStatus.PENDING),
    ]
    races[2].confidence = DataConfidence.LOW
    await memory_store.save_races(races)
    return races


# ──────────────────────────────────────────────
# Readiness
# ──────────────────────────────────────────────

class TestReadiness:
    @pytest.mark.asyncio
    async def test_threshold_boundary(self, memory_store, calibrated_races):
        """Readiness flips exactly at 500 completed races."""
        manager = DatasetManager(memory_store)
        races = calibrated_races(500)
        await memory_store.save_races(races[:499])
        assert not await manager.is_calibration_ready()
        assert await manager.get_races_needed() == 1

        await memory_store.save_race(races[499])
        assert await manager.is_calibration_ready()
        assert await manager.get_races_needed() == 0

    @pytest.mark.asyncio
    async def test_pending_races_do_not_count(self, memory_store, race_builder):
        manager = DatasetManager(memory_store, calibration_threshold=2, minimum_races=1)
        await memory_store.save_races([
            race_builder(1),
            race_builder(2, status=RaceStatus.PENDING),
        ])
        assert await manager.has_minimum_data()
        assert not await manager.is_calibration_ready()
        assert await manager.get_races_needed() == 1

    @pytest.mark.asyncio
    async def test_empty(self, manager):
        assert not await manager.has_minimum_data()
        assert await manager.get_races_needed() == 500
        assert (await manager.get_dataset_stats()).total_races == 0


# ──────────────────────────────────────────────
# Filtering
# ──────────────────────────────────────────────

class TestFiltering:
    @pytest.mark.asyncio
    async def test_by_track_and_dates(self, manager, mixed_dataset):
        assert len(await manager.get_races_by_track("SAR")) == 2
        may = await manager.get_races_by_date_range("2024-05-01", "2024-05-31")
        assert {r.race_number for r in may} == {1, 2}

    @pytest.mark.asyncio
    async def test_combined_filter(self, manager, mixed_dataset):
        races = await manager.get_filtered_races(CalibrationFilter(
            track_codes=["cd"], surface=SurfaceCode.TURF, min_distance=8.0,
        ))
        assert [r.race_number for r in races] == [2]

    @pytest.mark.asyncio
    async def test_source_and_date_filter(self, manager, mixed_dataset):
        races = await manager.get_filtered_races(CalibrationFilter(
            start_date="2024-06-01", source=RaceSource.EXTRACTED,
        ))
        assert [r.race_number for r in races] == [3]

    @pytest.mark.asyncio
    async def test_empty_filter_returns_everything(self, manager, mixed_dataset):
        assert len(await manager.get_filtered_races(CalibrationFilter())) == 4

    @pytest.mark.asyncio
    async def test_field_size_filter(self, manager, mixed_dataset):
        assert await manager.get_filtered_races(CalibrationFilter(min_field_size=4)) == []
        assert len(await manager.get_filtered_races(CalibrationFilter(max_field_size=3))) == 4


# ──────────────────────────────────────────────
# Grouping and statistics
# ──────────────────────────────────────────────

class TestGrouping:
    @pytest.mark.asyncio
    async def test_completed_entries_only(self, manager, mixed_dataset):
        entries = await manager.get_all_completed_entries()
        assert len(entries) == 9

    @pytest.mark.asyncio
    async def test_probability_buckets(self, manager, mixed_dataset):
        buckets = await manager.group_by_probability_bucket()
        assert len(buckets) == 10
        assert len(buckets["0.50-0.60"]) == 3
        assert len(buckets["0.20-0.30"]) == 3
        assert buckets["0.90-1.00"] == []

    @pytest.mark.asyncio
    async def test_score_buckets(self, manager, mixed_dataset):
        buckets = await manager.group_by_score_bucket()
        assert "0-20" in buckets
        assert len(buckets["140-160"]) == 9

    @pytest.mark.asyncio
    async def test_win_rates(self, manager, mixed_dataset):
        rows = await manager.get_bucket_win_rates()
        top = next(r for r in rows if r["bucket"] == "0.50-0.60")
        assert top["count"] == 3
        assert top["wins"] == 3
        assert top["actual"] == 1.0
        assert top["predicted"] == 0.5
        assert all(r["count"] > 0 for r in rows)

    @pytest.mark.asyncio
    async def test_tier_stats(self, memory_store, race_builder):
        race = race_builder()
        race.entries[0].tier = 1
        race.entries[0].final_odds = 3.0
        race.entries[1].tier = 1
        await memory_store.save_race(race)

        rows = await DatasetManager(memory_store).get_tier_stats()
        tier_one = next(r for r in rows if r["tier"] == 1)
        assert tier_one["count"] == 2
        assert tier_one["wins"] == 1
        assert tier_one["win_rate"] == 0.5
        # $2 staked, $4 back
        assert tier_one["roi"] == 100.0
        assert [r["tier"] for r in rows] == [0, 1]

    @pytest.mark.asyncio
    async def test_surface_stats(self, manager, mixed_dataset):
        stats = await manager.get_surface_stats()
        assert stats["D"]["race_count"] == 2
        assert stats["T"]["race_count"] == 1
        assert stats["D"]["avg_winning_odds"] == 5.0
        assert "S" not in stats

    @pytest.mark.asyncio
    async def test_quality_summary(self, manager, mixed_dataset):
        summary = await manager.get_data_quality_summary()
        assert summary["total_races"] == 4
        assert summary["completed_races"] == 3
        assert summary["pending_races"] == 1
        assert summary["races_with_predictions"] == 4
        assert summary["avg_confidence"] == pytest.approx((1 + 1 + 0.25 + 1) / 4, abs=1e-3)
        assert not summary["is_ready"]
        assert summary["readiness_percentage"] == 0.6

    @pytest.mark.asyncio
    async def test_random_sample(self, memory_store, calibrated_races):
        await memory_store.save_races(calibrated_races(30))
        manager = DatasetManager(memory_store)
        sample = await manager.get_random_sample(5, rng=random.Random(1))
        assert len(sample) == 5
        assert len({r.id for r in sample}) == 5
        assert len(await manager.get_random_sample(100)) == 30


# ──────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────

class TestValidateDataset:
    @pytest.mark.asyncio
    async def test_clean(self, manager, mixed_dataset):
        result = await manager.validate_dataset()
        assert result.valid
        assert result.issues == []
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_problems_reported(self, memory_store, race_builder):
        dup = race_builder(1)
        dup.entries[1].program_number = 1
        no_winner = race_builder(2, winner=None)
        no_preds = race_builder(3, probabilities=[0.0, 0.0, 0.0])
        bad_sum = race_builder(4, probabilities=[0.6, 0.6, 0.6])
        await memory_store.save_races([dup, no_winner, no_preds, bad_sum])

        result = await DatasetManager(memory_store).validate_dataset()
        assert not result.valid
        assert f"Race {dup.id}: Duplicate program numbers" in result.issues
        assert f"Race {no_winner.id}: Has 0 winners (expected 1)" in result.issues
        assert f"Race {no_preds.id}: No predictions logged" in result.warnings
        assert f"Race {bad_sum.id}: Probabilities sum to 1.80 (expected ~1.0)" in result.warnings
