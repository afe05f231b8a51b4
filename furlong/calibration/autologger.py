"""One-call calibration data capture after a race card has been processed."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from furlong.calibration.cards import ParsedCard, ScoredRace
from furlong.calibration.dataset import CALIBRATION_THRESHOLD
from furlong.calibration.extractor import ExtractorOptions, extract_historical_races
from furlong.calibration.manager import CalibrationManager
from furlong.calibration.predictions import log_predictions
from furlong.calibration.schema import RaceStatus
from furlong.calibration.storage import CalibrationStore

logger = logging.getLogger(__name__)


@dataclass
class AutoLogResult:
    success: bool = True
    historical_races_extracted: int = 0
    predictions_logged: int = 0
    total_races_in_dataset: int = 0
    calibration_ready: bool = False
    races_needed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass
class AutoLogOptions:
    extract_historical: bool = True
    log_predictions: bool = True
    extractor_options: Optional[ExtractorOptions] = None
    on_start: Optional[Callable[[], None]] = None
    on_progress: Optional[Callable[[str], None]] = None
    on_complete: Optional[Callable[[AutoLogResult], None]] = None

    def progress(self, message: str) -> None:
        if self.on_progress:
            self.on_progress(message)


async def _save_new_races(store: CalibrationStore, card: ParsedCard, options: AutoLogOptions) -> int:
    extraction = extract_historical_races(card, options.extractor_options)
    # Races already in the store (self-logged ones especially) are left untouched
    fresh = [r for r in extraction.races if not await store.race_exists(r.id)]
    if not fresh:
        return 0
    saved = await store.save_races(fresh)
    logger.info(
        f"Saved {saved} historical races from {card.filename or 'card'} "
        f"({len(extraction.races) - len(fresh)} already known)"
    )
    return saved


async def auto_log_calibration_data(
    store: CalibrationStore,
    manager: CalibrationManager,
    card: ParsedCard,
    scored_races: Optional[list[ScoredRace]] = None,
    options: Optional[AutoLogOptions] = None,
) -> AutoLogResult:
    """Extract history, log predictions, then let the manager refit if due.

    Each step records its own failure in ``errors`` and the next step still
    runs; the result is only ``success`` when nothing failed.
    """
    opts = options or AutoLogOptions()
    started = time.perf_counter()
    result = AutoLogResult()

    if opts.on_start:
        opts.on_start()
    opts.progress("Starting calibration data logging")

    if opts.extract_historical:
        opts.progress("Extracting historical races from past performances")
        try:
            result.historical_races_extracted = await _save_new_races(store, card, opts)
        except Exception as e:
            logger.error(f"Historical extraction failed: {e}", exc_info=True)
            result.errors.append(f"Historical extraction failed: {e}")

    if opts.log_predictions and scored_races:
        opts.progress("Logging predictions for current races")
        for scored in scored_races:
            try:
                logged = await log_predictions(store, scored.race, scored.scored_horses)
            except Exception as e:
                race_number = scored.race.header.race_number
                logger.error(f"Prediction logging failed for race {race_number}: {e}")
                result.errors.append(f"Prediction logging for race {race_number}: {e}")
                continue
            if logged.is_new:
                result.predictions_logged += 1

    opts.progress("Checking calibration status")
    try:
        result.total_races_in_dataset = await store.count_races()
        completed = await store.count_races(RaceStatus.COMPLETE)
        result.races_needed = max(0, manager.config.min_races_required - completed)
        result.calibration_ready = await manager.check_readiness()
    except Exception as e:
        logger.warning(f"Calibration check failed: {e}")
        result.errors.append(f"Calibration check failed: {e}")

    result.success = not result.errors
    result.duration_ms = round((time.perf_counter() - started) * 1000, 1)

    if opts.on_complete:
        opts.on_complete(result)

    logger.info(
        f"Auto-logging complete: {result.historical_races_extracted} extracted, "
        f"{result.predictions_logged} predicted, {result.total_races_in_dataset} in dataset, "
        f"ready={result.calibration_ready} ({result.duration_ms:.0f}ms)"
    )
    return result


async def get_calibration_progress(
    store: CalibrationStore, target: int = CALIBRATION_THRESHOLD,
) -> dict:
    """Completed races against the fitting threshold."""
    current = await store.count_races(RaceStatus.COMPLETE)
    return {
        "current_races": current,
        "target_races": target,
        "percent_complete": min(100, round(current / target * 100)) if target else 100,
        "is_ready": current >= target,
    }
