"""Race-card shapes consumed from the form parser and the scorer.

The parser and scorer live outside this package; these models validate
what they hand over (typically JSON) before any calibration code sees it.
"""

from typing import Optional

from pydantic import BaseModel, Field


class PastPerformance(BaseModel):
    """One prior start from a horse's form history."""

    date: str = ""
    track: str = ""
    race_number: int = 0
    distance_furlongs: float = 0.0
    surface: str = "dirt"
    field_size: int = 0
    finish_position: Optional[int] = None
    odds: Optional[float] = None  # Final odds-to-1
    speed_figure: Optional[int] = None
    track_condition: Optional[str] = None
    classification: Optional[str] = None
    purse: Optional[float] = None


class CardHorse(BaseModel):
    program_number: int
    horse_name: str = ""
    post_position: int = 0
    is_scratched: bool = False
    morning_line_decimal: float = 0.0
    past_performances: list[PastPerformance] = Field(default_factory=list)


class RaceHeader(BaseModel):
    track_code: str
    race_date_raw: str
    race_number: int
    distance_furlongs: float = 0.0
    surface: str = "dirt"
    race_type: Optional[str] = None
    purse: Optional[float] = None


class CardRace(BaseModel):
    header: RaceHeader
    horses: list[CardHorse] = Field(default_factory=list)


class ParsedCard(BaseModel):
    """A whole parsed race-card file."""

    filename: str = ""
    races: list[CardRace] = Field(default_factory=list)


class ScoredHorse(BaseModel):
    """Scorer output for one horse (base score is on a 0-~330 scale)."""

    horse: CardHorse
    base_score: float
    total_score: float = 0.0
    rank: int


class ScoredRace(BaseModel):
    race: CardRace
    scored_horses: list[ScoredHorse] = Field(default_factory=list)
