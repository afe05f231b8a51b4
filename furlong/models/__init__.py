"""Database models for Furlong."""

from furlong.models.database import Base, init_db
from furlong.models.calibration import CalibrationMeta, HistoricalRaceRecord

__all__ = [
    "Base",
    "init_db",
    "CalibrationMeta",
    "HistoricalRaceRecord",
]
