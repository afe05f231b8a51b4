"""Tables backing the calibration dataset and its metadata."""

import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from furlong.calibration.schema import (
    DataConfidence,
    HistoricalEntry,
    HistoricalRace,
    RaceSource,
    RaceStatus,
    SurfaceCode,
)
from furlong.config import utc_now_naive
from furlong.models.database import Base


class HistoricalRaceRecord(Base):
    """One stored historical race; entries are kept as a JSON array."""

    __tablename__ = "historical_races"

    race_id: Mapped[str] = mapped_column(String(64), primary_key=True)  # TRACK-YYYY-MM-DD-Rn
    track_code: Mapped[str] = mapped_column(String(16), index=True)
    race_date: Mapped[str] = mapped_column(String(10), index=True)  # YYYY-MM-DD sorts lexically
    race_number: Mapped[int] = mapped_column(Integer)
    distance: Mapped[float] = mapped_column(Float, default=0.0)
    surface: Mapped[str] = mapped_column(String(1), default=SurfaceCode.DIRT.value)
    field_size: Mapped[int] = mapped_column(Integer, default=0)

    source: Mapped[str] = mapped_column(String(32), index=True)
    confidence: Mapped[str] = mapped_column(String(10), default=DataConfidence.HIGH.value)
    status: Mapped[str] = mapped_column(String(20), index=True)

    track_condition: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    classification: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    purse: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    entries_json: Mapped[str] = mapped_column(Text, default="[]")

    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )

    @property
    def entries(self) -> list[dict[str, Any]]:
        """Get entries as a list of dicts."""
        if self.entries_json:
            return json.loads(self.entries_json)
        return []

    @entries.setter
    def entries(self, value: list[dict[str, Any]]):
        self.entries_json = json.dumps(value)

    @classmethod
    def from_race(cls, race: HistoricalRace) -> "HistoricalRaceRecord":
        record = cls(race_id=race.id)
        record.apply(race)
        return record

    def apply(self, race: HistoricalRace) -> None:
        """Copy every field of ``race`` onto this row."""
        recorded = race.recorded_at
        if recorded.tzinfo is not None:
            recorded = recorded.astimezone(timezone.utc).replace(tzinfo=None)

        self.track_code = race.track_code
        self.race_date = race.race_date
        self.race_number = race.race_number
        self.distance = race.distance
        self.surface = race.surface.value
        self.field_size = race.field_size
        self.source = race.source.value
        self.confidence = race.confidence.value
        self.status = race.status.value
        self.track_condition = race.track_condition
        self.classification = race.classification
        self.purse = race.purse
        self.notes = race.notes
        self.entries = [e.to_dict() for e in race.entries]
        self.recorded_at = recorded

    def to_race(self) -> HistoricalRace:
        recorded = self.recorded_at or utc_now_naive()
        return HistoricalRace(
            id=self.race_id,
            track_code=self.track_code,
            race_date=self.race_date,
            race_number=self.race_number,
            distance=self.distance,
            surface=SurfaceCode(self.surface),
            field_size=self.field_size,
            entries=[HistoricalEntry.from_dict(e) for e in self.entries],
            recorded_at=recorded.replace(tzinfo=timezone.utc),
            source=RaceSource(self.source),
            confidence=DataConfidence(self.confidence),
            status=RaceStatus(self.status),
            track_condition=self.track_condition,
            classification=self.classification,
            purse=self.purse,
            notes=self.notes,
        )


class CalibrationMeta(Base):
    """Key/value store for fitted parameters, fit history and counters."""

    __tablename__ = "calibration_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, default="null")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )

    @property
    def value(self) -> Any:
        return json.loads(self.value_json) if self.value_json else None

    @value.setter
    def value(self, value: Any):
        self.value_json = json.dumps(value)
