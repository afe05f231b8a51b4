"""Persistence for the calibration dataset.

``CalibrationStore`` is the capability the rest of the package depends on.
Implementations never let a persistence fault escape: reads fall back to
empty defaults and writes report ``False`` after logging, so a broken
database leaves calibration in passthrough mode instead of breaking
prediction flows.
"""

import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional, Union

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from furlong.calibration.schema import (
    CalibrationDataset,
    HistoricalRace,
    RaceSource,
    RaceStatus,
    summarize_dataset,
    validate_race_structure,
)
from furlong.config import utc_now
from furlong.models.calibration import CalibrationMeta, HistoricalRaceRecord

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1

# Faults a store converts into defaults
STORAGE_ERRORS = (SQLAlchemyError, OSError, ValueError, KeyError, TypeError)

DateLike = Union[str, date, datetime]


def date_key(value: DateLike) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class CalibrationStore(ABC):
    """Async store for historical races plus a small key/value area."""

    @abstractmethod
    async def save_race(self, race: HistoricalRace) -> bool:
        """Insert or replace ``race``."""

    async def save_races(self, races: Iterable[HistoricalRace]) -> int:
        """Save several races; returns how many were written."""
        saved = 0
        for race in races:
            if await self.save_race(race):
                saved += 1
        return saved

    @abstractmethod
    async def get_race(self, race_id: str) -> Optional[HistoricalRace]:
        ...

    @abstractmethod
    async def get_all_races(self) -> list[HistoricalRace]:
        ...

    @abstractmethod
    async def count_races(self, status: Optional[RaceStatus] = None) -> int:
        ...

    @abstractmethod
    async def get_races_by_track(self, track_code: str) -> list[HistoricalRace]:
        ...

    @abstractmethod
    async def get_races_by_date_range(
        self, start: DateLike, end: DateLike,
    ) -> list[HistoricalRace]:
        """Races with ``start <= race_date <= end`` (inclusive)."""

    @abstractmethod
    async def get_races_by_source(self, source: RaceSource) -> list[HistoricalRace]:
        ...

    @abstractmethod
    async def get_races_by_status(self, status: RaceStatus) -> list[HistoricalRace]:
        ...

    async def get_pending_races(self) -> list[HistoricalRace]:
        return await self.get_races_by_status(RaceStatus.PENDING)

    @abstractmethod
    async def get_races_by_ids(self, race_ids: Iterable[str]) -> list[HistoricalRace]:
        ...

    async def race_exists(self, race_id: str) -> bool:
        return await self.get_race(race_id) is not None

    async def update_race(self, race_id: str, **changes: Any) -> Optional[HistoricalRace]:
        """Replace fields of a stored race; returns the updated race or None."""
        race = await self.get_race(race_id)
        if race is None:
            return None
        try:
            updated = dataclasses.replace(race, **changes)
        except TypeError as e:
            logger.warning(f"Rejected update to {race_id}: {e}")
            return None
        if not await self.save_race(updated):
            return None
        return updated

    @abstractmethod
    async def delete_race(self, race_id: str) -> bool:
        ...

    @abstractmethod
    async def clear_all(self) -> bool:
        """Delete every race (metadata is left alone)."""

    @abstractmethod
    async def get_meta(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    async def put_meta(self, key: str, value: Any) -> bool:
        ...

    @abstractmethod
    async def delete_meta(self, key: str) -> bool:
        ...

    async def get_dataset_summary(self) -> CalibrationDataset:
        return summarize_dataset(await self.get_all_races())

    async def export_json(self) -> str:
        """Serialize every race to a versioned JSON document."""
        races = await self.get_all_races()
        return json.dumps({
            "version": EXPORT_VERSION,
            "exported_at": utc_now().isoformat(),
            "races": [r.to_dict() for r in races],
        })

    async def import_json(self, payload: str) -> ImportResult:
        """Load races from an export; invalid races are skipped and reported."""
        result = ImportResult()
        try:
            data = json.loads(payload)
        except ValueError as e:
            result.errors.append(f"Invalid JSON: {e}")
            return result

        if not isinstance(data, dict):
            result.errors.append("Export must be a JSON object")
            return result

        raw_races = data.get("races")
        if raw_races is None:
            raw_races = data.get("historicalRaces")  # older export layout
        if not isinstance(raw_races, list):
            result.errors.append("Export contains no race list")
            return result

        for raw in raw_races:
            try:
                race = HistoricalRace.from_dict(raw)
            except (KeyError, ValueError, TypeError) as e:
                result.skipped += 1
                result.errors.append(f"Unreadable race: {e}")
                continue

            problems = validate_race_structure(race)
            if problems:
                result.skipped += 1
                result.errors.append(f"{race.id}: {problems[0]}")
                continue

            if await self.save_race(race):
                result.imported += 1
            else:
                result.skipped += 1
                result.errors.append(f"{race.id}: save failed")

        logger.info(f"Imported {result.imported} races ({result.skipped} skipped)")
        return result


class SqlCalibrationStore(CalibrationStore):
    """SQLAlchemy-backed store (aiosqlite in practice)."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    async def _select_races(self, *criteria) -> list[HistoricalRace]:
        stmt = select(HistoricalRaceRecord)
        if criteria:
            stmt = stmt.where(*criteria)
        stmt = stmt.order_by(HistoricalRaceRecord.race_date.desc(), HistoricalRaceRecord.race_id)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return [r.to_race() for r in result.scalars().all()]

    async def save_race(self, race: HistoricalRace) -> bool:
        try:
            async with self._sessions() as db:
                record = await db.get(HistoricalRaceRecord, race.id)
                if record is None:
                    db.add(HistoricalRaceRecord.from_race(race))
                else:
                    record.apply(race)
                await db.commit()
            return True
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to save race {race.id}: {e}")
            return False

    async def save_races(self, races: Iterable[HistoricalRace]) -> int:
        # Last write wins for repeated ids
        races = list({r.id: r for r in races}.values())
        if not races:
            return 0
        try:
            async with self._sessions() as db:
                for race in races:
                    record = await db.get(HistoricalRaceRecord, race.id)
                    if record is None:
                        db.add(HistoricalRaceRecord.from_race(race))
                    else:
                        record.apply(race)
                await db.commit()
            return len(races)
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to save {len(races)} races: {e}")
            return 0

    async def get_race(self, race_id: str) -> Optional[HistoricalRace]:
        try:
            async with self._sessions() as db:
                record = await db.get(HistoricalRaceRecord, race_id)
                return record.to_race() if record else None
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to load race {race_id}: {e}")
            return None

    async def get_all_races(self) -> list[HistoricalRace]:
        try:
            return await self._select_races()
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to load races: {e}")
            return []

    async def count_races(self, status: Optional[RaceStatus] = None) -> int:
        stmt = select(func.count(HistoricalRaceRecord.race_id))
        if status is not None:
            stmt = stmt.where(HistoricalRaceRecord.status == status.value)
        try:
            async with self._sessions() as db:
                return (await db.execute(stmt)).scalar() or 0
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to count races: {e}")
            return 0

    async def get_races_by_track(self, track_code: str) -> list[HistoricalRace]:
        try:
            return await self._select_races(
                HistoricalRaceRecord.track_code == track_code.strip().upper()
            )
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to load races for {track_code}: {e}")
            return []

    async def get_races_by_date_range(
        self, start: DateLike, end: DateLike,
    ) -> list[HistoricalRace]:
        try:
            return await self._select_races(
                HistoricalRaceRecord.race_date >= date_key(start),
                HistoricalRaceRecord.race_date <= date_key(end),
            )
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to load races by date: {e}")
            return []

    async def get_races_by_source(self, source: RaceSource) -> list[HistoricalRace]:
        try:
            return await self._select_races(HistoricalRaceRecord.source == source.value)
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to load {source.value} races: {e}")
            return []

    async def get_races_by_status(self, status: RaceStatus) -> list[HistoricalRace]:
        try:
            return await self._select_races(HistoricalRaceRecord.status == status.value)
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to load {status.value} races: {e}")
            return []

    async def get_races_by_ids(self, race_ids: Iterable[str]) -> list[HistoricalRace]:
        ids = list(race_ids)
        if not ids:
            return []
        try:
            return await self._select_races(HistoricalRaceRecord.race_id.in_(ids))
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to load races by id: {e}")
            return []

    async def race_exists(self, race_id: str) -> bool:
        stmt = select(func.count(HistoricalRaceRecord.race_id)).where(
            HistoricalRaceRecord.race_id == race_id
        )
        try:
            async with self._sessions() as db:
                return bool((await db.execute(stmt)).scalar())
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to check race {race_id}: {e}")
            return False

    async def delete_race(self, race_id: str) -> bool:
        try:
            async with self._sessions() as db:
                result = await db.execute(
                    delete(HistoricalRaceRecord).where(HistoricalRaceRecord.race_id == race_id)
                )
                await db.commit()
                return result.rowcount > 0
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to delete race {race_id}: {e}")
            return False

    async def clear_all(self) -> bool:
        try:
            async with self._sessions() as db:
                await db.execute(delete(HistoricalRaceRecord))
                await db.commit()
            logger.info("Cleared all historical races")
            return True
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to clear races: {e}")
            return False

    async def get_meta(self, key: str, default: Any = None) -> Any:
        try:
            async with self._sessions() as db:
                row = await db.get(CalibrationMeta, key)
                if row is None:
                    return default
                value = row.value
                return default if value is None else value
        except STORAGE_ERRORS as e:
            logger.warning(f"Failed to read calibration meta {key}: {e}")
            return default

    async def put_meta(self, key: str, value: Any) -> bool:
        try:
            async with self._sessions() as db:
                row = await db.get(CalibrationMeta, key)
                if row is None:
                    row = CalibrationMeta(key=key)
                    db.add(row)
                row.value = value
                await db.commit()
            return True
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to write calibration meta {key}: {e}")
            return False

    async def delete_meta(self, key: str) -> bool:
        try:
            async with self._sessions() as db:
                await db.execute(delete(CalibrationMeta).where(CalibrationMeta.key == key))
                await db.commit()
            return True
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to delete calibration meta {key}: {e}")
            return False


class MemoryCalibrationStore(CalibrationStore):
    """Dict-backed store for hosts without a database (and for tests).

    Races are stored as plain dicts so callers never share mutable race
    objects with the store.
    """

    def __init__(self):
        self._races: dict[str, dict] = {}
        self._meta: dict[str, str] = {}

    def _matching(self, predicate) -> list[HistoricalRace]:
        races = [HistoricalRace.from_dict(d) for d in self._races.values()]
        races = [r for r in races if predicate(r)]
        races.sort(key=lambda r: r.id)
        races.sort(key=lambda r: r.race_date, reverse=True)
        return races

    async def save_race(self, race: HistoricalRace) -> bool:
        self._races[race.id] = race.to_dict()
        return True

    async def get_race(self, race_id: str) -> Optional[HistoricalRace]:
        data = self._races.get(race_id)
        return HistoricalRace.from_dict(data) if data else None

    async def get_all_races(self) -> list[HistoricalRace]:
        return self._matching(lambda r: True)

    async def count_races(self, status: Optional[RaceStatus] = None) -> int:
        if status is None:
            return len(self._races)
        return sum(1 for d in self._races.values() if d["status"] == status.value)

    async def get_races_by_track(self, track_code: str) -> list[HistoricalRace]:
        track = track_code.strip().upper()
        return self._matching(lambda r: r.track_code == track)

    async def get_races_by_date_range(
        self, start: DateLike, end: DateLike,
    ) -> list[HistoricalRace]:
        lo, hi = date_key(start), date_key(end)
        return self._matching(lambda r: lo <= r.race_date <= hi)

    async def get_races_by_source(self, source: RaceSource) -> list[HistoricalRace]:
        return self._matching(lambda r: r.source == source)

    async def get_races_by_status(self, status: RaceStatus) -> list[HistoricalRace]:
        return self._matching(lambda r: r.status == status)

    async def get_races_by_ids(self, race_ids: Iterable[str]) -> list[HistoricalRace]:
        wanted = set(race_ids)
        return self._matching(lambda r: r.id in wanted)

    async def delete_race(self, race_id: str) -> bool:
        return self._races.pop(race_id, None) is not None

    async def clear_all(self) -> bool:
        self._races.clear()
        return True

    async def get_meta(self, key: str, default: Any = None) -> Any:
        if key not in self._meta:
            return default
        return json.loads(self._meta[key])

    async def put_meta(self, key: str, value: Any) -> bool:
        self._meta[key] = json.dumps(value)
        return True

    async def delete_meta(self, key: str) -> bool:
        self._meta.pop(key, None)
        return True
