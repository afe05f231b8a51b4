"""Historical race records used for probability calibration.

A ``HistoricalRace`` is created either by the history extractor (already
``complete``, no predictions) or by the prediction logger (``pending_result``,
predictions but no finishing order). The results recorder later flips
pending races to ``complete``.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from furlong.config import utc_now

logger = logging.getLogger(__name__)

RACE_ID_PATTERN = re.compile(r"^([A-Z]+)-(\d{4}-\d{2}-\d{2})-R(\d+)$")

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_COMPACT_YMD = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_COMPACT_MDY = re.compile(r"^(\d{2})(\d{2})(\d{2})$")

# Formats tried after the fast paths fail
_FALLBACK_DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y/%m/%d",
    "%d %b %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)


class RaceSource(str, Enum):
    """Where a historical race record came from."""

    EXTRACTED = "extracted-from-history"
    MANUAL = "manually-entered"
    SELF_LOGGED = "self-logged"


class DataConfidence(str, Enum):
    """How complete the recovered race data is."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RaceStatus(str, Enum):
    PENDING = "pending_result"
    COMPLETE = "complete"


class SurfaceCode(str, Enum):
    DIRT = "D"
    TURF = "T"
    SYNTHETIC = "S"


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    """First present key wins (snake_case first, legacy camelCase after)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class HistoricalEntry:
    """One horse's record within one race."""

    program_number: int
    finish_position: int = 0  # 0 = scratched / not yet known
    predicted_probability: float = 0.0
    implied_probability: float = 0.0
    final_odds: float = 0.0
    base_score: float = 0.0
    final_score: float = 0.0
    tier: int = 0
    was_winner: bool = False
    was_place: bool = False
    was_show: bool = False
    horse_name: Optional[str] = None
    morning_line_odds: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "program_number": self.program_number,
            "finish_position": self.finish_position,
            "predicted_probability": self.predicted_probability,
            "implied_probability": self.implied_probability,
            "final_odds": self.final_odds,
            "base_score": self.base_score,
            "final_score": self.final_score,
            "tier": self.tier,
            "was_winner": self.was_winner,
            "was_place": self.was_place,
            "was_show": self.was_show,
            "horse_name": self.horse_name,
            "morning_line_odds": self.morning_line_odds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoricalEntry":
        return cls(
            program_number=int(_pick(data, "program_number", "programNumber", default=0)),
            finish_position=int(_pick(data, "finish_position", "finishPosition", default=0)),
            predicted_probability=float(
                _pick(data, "predicted_probability", "predictedProbability", default=0.0)
            ),
            implied_probability=float(
                _pick(data, "implied_probability", "impliedProbability", default=0.0)
            ),
            final_odds=float(_pick(data, "final_odds", "finalOdds", default=0.0)),
            base_score=float(_pick(data, "base_score", "baseScore", default=0.0)),
            final_score=float(_pick(data, "final_score", "finalScore", default=0.0)),
            tier=int(_pick(data, "tier", default=0)),
            was_winner=bool(_pick(data, "was_winner", "wasWinner", default=False)),
            was_place=bool(_pick(data, "was_place", "wasPlace", default=False)),
            was_show=bool(_pick(data, "was_show", "wasShow", default=False)),
            horse_name=_pick(data, "horse_name", "horseName"),
            morning_line_odds=_pick(data, "morning_line_odds", "morningLineOdds"),
        )


@dataclass
class HistoricalRace:
    """One race with its entries, provenance and lifecycle status."""

    id: str
    track_code: str
    race_date: str  # YYYY-MM-DD
    race_number: int
    distance: float  # furlongs
    surface: SurfaceCode
    field_size: int
    entries: list[HistoricalEntry] = field(default_factory=list)
    recorded_at: datetime = field(default_factory=utc_now)
    source: RaceSource = RaceSource.EXTRACTED
    confidence: DataConfidence = DataConfidence.HIGH
    status: RaceStatus = RaceStatus.COMPLETE
    track_condition: Optional[str] = None
    classification: Optional[str] = None
    purse: Optional[float] = None
    notes: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.status == RaceStatus.COMPLETE

    def active_entries(self) -> list[HistoricalEntry]:
        """Entries that actually finished (non-scratched)."""
        return [e for e in self.entries if e.finish_position > 0]

    def winners(self) -> list[HistoricalEntry]:
        return [e for e in self.entries if e.was_winner]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "track_code": self.track_code,
            "race_date": self.race_date,
            "race_number": self.race_number,
            "distance": self.distance,
            "surface": self.surface.value,
            "field_size": self.field_size,
            "entries": [e.to_dict() for e in self.entries],
            "recorded_at": self.recorded_at.isoformat(),
            "source": self.source.value,
            "confidence": self.confidence.value,
            "status": self.status.value,
            "track_condition": self.track_condition,
            "classification": self.classification,
            "purse": self.purse,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoricalRace":
        """Build a race from a stored or exported dict.

        Raises ValueError/KeyError/TypeError on malformed input; callers that
        read untrusted data catch these.
        """
        recorded_raw = _pick(data, "recorded_at", "recordedAt")
        if isinstance(recorded_raw, datetime):
            recorded_at = recorded_raw
        elif recorded_raw:
            recorded_at = datetime.fromisoformat(str(recorded_raw).replace("Z", "+00:00"))
        else:
            recorded_at = utc_now()
        if recorded_at.tzinfo is None:
            recorded_at = recorded_at.replace(tzinfo=timezone.utc)

        return cls(
            id=data["id"],
            track_code=_pick(data, "track_code", "trackCode", default=""),
            race_date=_pick(data, "race_date", "raceDate", default=""),
            race_number=int(_pick(data, "race_number", "raceNumber", default=0)),
            distance=float(_pick(data, "distance", default=0.0)),
            surface=SurfaceCode(_pick(data, "surface", default="D")),
            field_size=int(_pick(data, "field_size", "fieldSize", default=0)),
            entries=[HistoricalEntry.from_dict(e) for e in data.get("entries", [])],
            recorded_at=recorded_at,
            source=_coerce_source(_pick(data, "source", default=RaceSource.EXTRACTED.value)),
            confidence=DataConfidence(
                str(_pick(data, "confidence", default="high")).lower()
            ),
            status=RaceStatus(_pick(data, "status", default=RaceStatus.COMPLETE.value)),
            track_condition=_pick(data, "track_condition", "trackCondition"),
            classification=_pick(data, "classification"),
            purse=_pick(data, "purse"),
            notes=_pick(data, "notes"),
        )


# Provenance names used by older exports
_LEGACY_SOURCES = {
    "drf_parse": RaceSource.EXTRACTED,
    "manual_entry": RaceSource.MANUAL,
    "bot_result": RaceSource.SELF_LOGGED,
}


def _coerce_source(value: str) -> RaceSource:
    if value in _LEGACY_SOURCES:
        return _LEGACY_SOURCES[value]
    return RaceSource(value)


@dataclass
class CalibrationDataset:
    """Summary statistics recomputed from all stored races."""

    total_races: int = 0
    total_entries: int = 0
    completed_races: int = 0
    pending_races: int = 0
    earliest_date: Optional[str] = None
    latest_date: Optional[str] = None
    tracks: list[str] = field(default_factory=list)
    by_source: dict[str, int] = field(default_factory=dict)
    by_surface: dict[str, int] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_races": self.total_races,
            "total_entries": self.total_entries,
            "completed_races": self.completed_races,
            "pending_races": self.pending_races,
            "date_range": (
                {"earliest": self.earliest_date, "latest": self.latest_date}
                if self.earliest_date else None
            ),
            "tracks": self.tracks,
            "by_source": self.by_source,
            "by_surface": self.by_surface,
            "last_updated": self.last_updated.isoformat(),
        }


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────


def normalize_date(raw: str) -> str:
    """Normalize a racing-form date to YYYY-MM-DD.

    Accepts ISO dates (with or without a time part), compact YYYYMMDD and
    compact MMDDYY (years above 50 are 19xx). Anything unparseable is
    returned unchanged.
    """
    value = (raw or "").strip()
    if not value:
        return value

    m = _ISO_DATE.match(value)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"

    m = _COMPACT_YMD.match(value)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"

    m = _COMPACT_MDY.match(value)
    if m:
        month, day, yy = m.group(1), m.group(2), int(m.group(3))
        year = 1900 + yy if yy > 50 else 2000 + yy
        return f"{year}-{month}-{day}"

    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue

    logger.debug(f"Unparseable race date left as-is: {value!r}")
    return value


def generate_race_id(track_code: str, race_date: str, race_number: int) -> str:
    """Stable race identifier: ``{TRACK}-{YYYY-MM-DD}-R{n}``."""
    return f"{track_code.strip().upper()}-{normalize_date(race_date)}-R{race_number}"


def parse_race_id(race_id: str) -> Optional[tuple[str, str, int]]:
    """Split a race id into (track_code, race_date, race_number)."""
    m = RACE_ID_PATTERN.match(race_id or "")
    if not m:
        return None
    return m.group(1), m.group(2), int(m.group(3))


def to_surface_code(surface: Optional[str]) -> SurfaceCode:
    s = (surface or "").strip().lower()
    if s in ("turf", "t", "inner turf", "i"):
        return SurfaceCode.TURF
    if s in ("synthetic", "all-weather", "all weather", "aw", "s"):
        return SurfaceCode.SYNTHETIC
    return SurfaceCode.DIRT


def calculate_implied_probability(decimal_odds: float) -> float:
    """Market-implied win probability from odds-to-1 (``1 / (odds + 1)``)."""
    if decimal_odds is None or decimal_odds <= 0:
        return 0.0
    return 1.0 / (decimal_odds + 1.0)


def validate_race_structure(race: HistoricalRace) -> list[str]:
    """Problems that make ``race`` unusable as a stored record at all."""
    errors: list[str] = []

    if not race.id:
        errors.append("Missing race ID")
    if not race.track_code:
        errors.append("Missing track code")
    if not race.race_date:
        errors.append("Missing race date")
    if race.race_number < 1:
        errors.append(f"Invalid race number: {race.race_number}")
    if not race.entries:
        errors.append("Race has no entries")
    return errors


def validate_historical_race(race: HistoricalRace) -> list[str]:
    """Return a list of problems with ``race`` (empty when it is usable)."""
    errors = validate_race_structure(race)

    if race.distance <= 0:
        errors.append(f"Invalid distance: {race.distance}")

    seen: set[int] = set()
    for entry in race.entries:
        if entry.program_number in seen:
            errors.append(f"Duplicate program number: {entry.program_number}")
        seen.add(entry.program_number)
        if not 0 <= entry.predicted_probability <= 1:
            errors.append(
                f"Invalid predicted probability for #{entry.program_number}: "
                f"{entry.predicted_probability}"
            )
        if not 0 <= entry.implied_probability <= 1:
            errors.append(
                f"Invalid implied probability for #{entry.program_number}: "
                f"{entry.implied_probability}"
            )

    if race.status == RaceStatus.COMPLETE and race.entries:
        winners = len(race.winners())
        if winners != 1:
            errors.append(f"Expected exactly 1 winner, found {winners}")

    return errors


def create_empty_dataset() -> CalibrationDataset:
    return CalibrationDataset()


def summarize_dataset(races: list[HistoricalRace]) -> CalibrationDataset:
    """Recompute dataset summary statistics from ``races``."""
    if not races:
        return create_empty_dataset()

    by_source = {s.value: 0 for s in RaceSource}
    by_surface = {s.value: 0 for s in SurfaceCode}
    tracks: set[str] = set()
    total_entries = 0
    pending = 0

    for race in races:
        by_source[race.source.value] += 1
        by_surface[race.surface.value] += 1
        tracks.add(race.track_code)
        total_entries += len(race.entries)
        if race.status == RaceStatus.PENDING:
            pending += 1

    dates = sorted(r.race_date for r in races if r.race_date)
    return CalibrationDataset(
        total_races=len(races),
        total_entries=total_entries,
        completed_races=len(races) - pending,
        pending_races=pending,
        earliest_date=dates[0] if dates else None,
        latest_date=dates[-1] if dates else None,
        tracks=sorted(tracks),
        by_source=by_source,
        by_surface=by_surface,
    )
