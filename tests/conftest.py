"""Shared test fixtures for furlong."""

import random
from typing import AsyncGenerator, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import furlong.models  # noqa: F401  (registers tables on Base)
from furlong.calibration.cards import (
    CardHorse,
    CardRace,
    ParsedCard,
    PastPerformance,
    RaceHeader,
    ScoredHorse,
    ScoredRace,
)
from furlong.calibration.schema import (
    HistoricalEntry,
    HistoricalRace,
    RaceSource,
    RaceStatus,
    SurfaceCode,
    generate_race_id,
)
from furlong.calibration.storage import MemoryCalibrationStore, SqlCalibrationStore
from furlong.models.database import Base


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db_sessions(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(db_sessions) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with db_sessions() as session:
        yield session


@pytest.fixture
def store(db_sessions) -> SqlCalibrationStore:
    return SqlCalibrationStore(db_sessions)


@pytest.fixture
def memory_store() -> MemoryCalibrationStore:
    return MemoryCalibrationStore()


# ──────────────────────────────────────────────
# Builders
# ──────────────────────────────────────────────

def make_entry(
    program_number: int,
    finish_position: int = 0,
    predicted_probability: float = 0.0,
    final_odds: float = 5.0,
    tier: int = 0,
    base_score: float = 150.0,
) -> HistoricalEntry:
    return HistoricalEntry(
        program_number=program_number,
        finish_position=finish_position,
        predicted_probability=predicted_probability,
        implied_probability=1.0 / (final_odds + 1.0) if final_odds > 0 else 0.0,
        final_odds=final_odds,
        base_score=base_score,
        final_score=base_score,
        tier=tier,
        was_winner=finish_position == 1,
        was_place=0 < finish_position <= 2,
        was_show=0 < finish_position <= 3,
        horse_name=f"Horse {program_number}",
    )


def make_race(
    race_number: int = 1,
    track: str = "CD",
    race_date: str = "2024-05-04",
    probabilities: Optional[list[float]] = None,
    winner: Optional[int] = 1,
    status: RaceStatus = RaceStatus.COMPLETE,
    source: RaceSource = RaceSource.SELF_LOGGED,
    surface: SurfaceCode = SurfaceCode.DIRT,
    distance: float = 6.0,
) -> HistoricalRace:
    """A race with one entry per probability; ``winner`` is a program number."""
    probabilities = probabilities if probabilities is not None else [0.5, 0.3, 0.2]
    entries = []
    next_position = 2
    for i, p in enumerate(probabilities, start=1):
        if status == RaceStatus.PENDING:
            position = 0
        elif i == winner:
            position = 1
        else:
            position = next_position
            next_position += 1
        entries.append(make_entry(i, position, p))
    return HistoricalRace(
        id=generate_race_id(track, race_date, race_number),
        track_code=track,
        race_date=race_date,
        race_number=race_number,
        distance=distance,
        surface=surface,
        field_size=len(entries),
        entries=entries,
        source=source,
        status=status,
    )


def make_calibrated_races(count: int, field_size: int = 4, seed: int = 7) -> list[HistoricalRace]:
    """Completed races whose winners are drawn from the logged probabilities."""
    rng = random.Random(seed)
    races = []
    for n in range(count):
        weights = [rng.uniform(0.1, 1.0) for _ in range(field_size)]
        total = sum(weights)
        probabilities = [w / total for w in weights]
        winner = rng.choices(range(1, field_size + 1), weights=probabilities)[0]
        races.append(make_race(
            race_number=n % 12 + 1,
            race_date=f"2024-{n // 336 + 1:02d}-{(n // 12) % 28 + 1:02d}",
            probabilities=probabilities,
            winner=winner,
        ))
    return races


def make_pp(
    track: str = "SAR",
    date: str = "2024-08-01",
    race_number: int = 5,
    finish_position: Optional[int] = 1,
    odds: Optional[float] = 3.0,
    speed_figure: Optional[int] = 90,
    field_size: int = 8,
    distance: float = 6.0,
    surface: str = "dirt",
) -> PastPerformance:
    return PastPerformance(
        date=date,
        track=track,
        race_number=race_number,
        distance_furlongs=distance,
        surface=surface,
        field_size=field_size,
        finish_position=finish_position,
        odds=odds,
        speed_figure=speed_figure,
    )


def make_horse(
    program_number: int,
    past_performances: Optional[list[PastPerformance]] = None,
    is_scratched: bool = False,
    morning_line: float = 5.0,
) -> CardHorse:
    return CardHorse(
        program_number=program_number,
        horse_name=f"Runner {program_number}",
        post_position=program_number,
        is_scratched=is_scratched,
        morning_line_decimal=morning_line,
        past_performances=past_performances or [],
    )


def make_card_race(
    horses: list[CardHorse],
    track: str = "BEL",
    race_date: str = "2024-09-14",
    race_number: int = 3,
) -> CardRace:
    return CardRace(
        header=RaceHeader(
            track_code=track,
            race_date_raw=race_date,
            race_number=race_number,
            distance_furlongs=8.0,
            surface="turf",
            race_type="Allowance",
            purse=80000,
        ),
        horses=horses,
    )


def make_scored_race(race: CardRace, scores: Optional[list[float]] = None) -> ScoredRace:
    """Scores follow horse order; rank is by descending score."""
    scores = scores or [220.0 - 30 * i for i in range(len(race.horses))]
    order = sorted(range(len(scores)), key=lambda i: -scores[i])
    ranks = {i: r + 1 for r, i in enumerate(order)}
    return ScoredRace(
        race=race,
        scored_horses=[
            ScoredHorse(horse=h, base_score=s, total_score=s, rank=ranks[i])
            for i, (h, s) in enumerate(zip(race.horses, scores))
        ],
    )


@pytest.fixture
def sample_card() -> ParsedCard:
    """Two runners share one past race (finishing 1st and 3rd) plus one race each."""
    shared_win = make_pp(finish_position=1, odds=2.5)
    shared_third = make_pp(finish_position=3, odds=6.0, speed_figure=None)
    return ParsedCard(
        filename="BEL0914.DRF",
        races=[make_card_race([
            make_horse(1, [shared_win, make_pp(date="2024-07-10", race_number=2, finish_position=2)]),
            make_horse(2, [shared_third, make_pp(date="2024-07-20", race_number=4, finish_position=1)]),
            make_horse(3, [make_pp(date="2024-06-30", race_number=1, finish_position=4)]),
        ])],
    )


# Builders exposed as fixtures so test modules don't import conftest directly

@pytest.fixture
def race_builder():
    return make_race


@pytest.fixture
def entry_builder():
    return make_entry


@pytest.fixture
def calibrated_races():
    return make_calibrated_races


@pytest.fixture
def pp_builder():
    return make_pp


@pytest.fixture
def horse_builder():
    return make_horse


@pytest.fixture
def card_race_builder():
    return make_card_race


@pytest.fixture
def scored_race_builder():
    return make_scored_race
