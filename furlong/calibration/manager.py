"""Calibration lifecycle: load, fit, apply and refresh the Platt transform.

States run UNINITIALIZED -> NOT_READY -> READY. While not ready,
``calibrate`` and ``calibrate_field`` pass raw probabilities straight
through, so prediction flows never depend on calibration being available.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from furlong.calibration.dataset import CALIBRATION_THRESHOLD, DatasetManager
from furlong.calibration.fitter import (
    CrossValidationResult,
    FittingConfig,
    FittingResult,
    cross_validate_platt,
    evaluate_uncalibrated,
    fit_platt_gradient_descent,
)
from furlong.calibration.metrics import ComprehensiveMetrics, calculate_all_metrics
from furlong.calibration.platt import (
    PlattParameters,
    calibrate_field,
    calibrate_probability,
    deserialize_parameters,
    serialize_parameters,
    validate_parameters,
)
from furlong.calibration.schema import HistoricalEntry
from furlong.calibration.storage import CalibrationStore
from furlong.config import Settings, utc_now

logger = logging.getLogger(__name__)

PARAMETERS_KEY = "platt_parameters"
HISTORY_KEY = "calibration_history"
LAST_RACE_COUNT_KEY = "last_calibration_race_count"


class CalibrationState(str, Enum):
    UNINITIALIZED = "uninitialized"
    NOT_READY = "not_ready"
    READY = "ready"


@dataclass
class CalibrationManagerConfig:
    min_races_required: int = CALIBRATION_THRESHOLD
    recalibration_threshold: int = 50  # new completed races since the last fit
    max_recalibration_age_days: float = 7
    history_limit: int = 20
    fitting: FittingConfig = field(default_factory=FittingConfig)

    def __post_init__(self):
        if self.min_races_required < 1:
            raise ValueError("min_races_required must be at least 1")
        if self.recalibration_threshold < 1:
            raise ValueError("recalibration_threshold must be at least 1")
        if self.max_recalibration_age_days <= 0:
            raise ValueError("max_recalibration_age_days must be positive")
        if self.history_limit < 1:
            raise ValueError("history_limit must be at least 1")


@dataclass
class CalibrationStatus:
    is_ready: bool
    total_races: int
    races_needed: int
    progress_percent: float
    needs_recalibration: bool
    last_fitted_at: Optional[datetime] = None
    races_used_in_calibration: int = 0
    metrics: Optional[dict[str, float]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_ready": self.is_ready,
            "total_races": self.total_races,
            "races_needed": self.races_needed,
            "progress_percent": self.progress_percent,
            "needs_recalibration": self.needs_recalibration,
            "last_fitted_at": self.last_fitted_at.isoformat() if self.last_fitted_at else None,
            "races_used_in_calibration": self.races_used_in_calibration,
            "metrics": self.metrics,
        }


def _valid_pairs(entries: list[HistoricalEntry]) -> tuple[list[float], list[bool]]:
    predictions, outcomes = [], []
    for entry in entries:
        p = entry.predicted_probability
        if p is not None and math.isfinite(p) and 0 < p < 1:
            predictions.append(p)
            outcomes.append(entry.was_winner)
    return predictions, outcomes


def _run_fit(
    predictions: list[float], outcomes: list[bool], config: FittingConfig,
) -> tuple[dict[str, float], Optional[FittingResult]]:
    """CPU-bound part of a fit; runs in a worker thread."""
    baseline = evaluate_uncalibrated(predictions, outcomes)
    return baseline, fit_platt_gradient_descent(predictions, outcomes, config)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class CalibrationManager:
    """Owns the active Platt transform for one calibration store.

    Initialization is shared: concurrent callers await the same task.
    Fits are serialized by a lock, and auto-triggered fits run in a
    background task exposed as ``pending_fit``.
    """

    def __init__(
        self,
        store: CalibrationStore,
        config: Optional[CalibrationManagerConfig] = None,
        dataset: Optional[DatasetManager] = None,
    ):
        self.store = store
        self.config = config or CalibrationManagerConfig()
        self.dataset = dataset or DatasetManager(
            store, calibration_threshold=self.config.min_races_required,
        )
        self.state = CalibrationState.UNINITIALIZED
        self.pending_fit: Optional[asyncio.Task] = None
        self._params: Optional[PlattParameters] = None
        self._last_race_count = 0
        self._init_task: Optional[asyncio.Task] = None
        self._fit_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self.state == CalibrationState.READY and self._params is not None

    # ──────────────────────────────────────────────
    # Initialization
    # ──────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load persisted state once; concurrent callers wait on the same load."""
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._do_initialize())
        await self._init_task

    async def _do_initialize(self) -> None:
        try:
            params = await self._load_parameters()
            if params:
                self._params = params
                self.state = CalibrationState.READY
                logger.info(
                    f"Loaded calibration: A={params.a:.4f} B={params.b:.4f} "
                    f"races_used={params.races_used}"
                )
            else:
                self.state = CalibrationState.NOT_READY

            self._last_race_count = _as_int(await self.store.get_meta(LAST_RACE_COUNT_KEY, 0))
            await self._check_auto_fit()
        except Exception as e:
            logger.error(f"Calibration initialization failed: {e}", exc_info=True)
        finally:
            if self.state == CalibrationState.UNINITIALIZED:
                self.state = CalibrationState.NOT_READY

    async def _load_parameters(self) -> Optional[PlattParameters]:
        raw = await self.store.get_meta(PARAMETERS_KEY)
        if raw is None:
            return None
        params = deserialize_parameters(raw) if isinstance(raw, dict) else None
        if params is None:
            logger.warning("Stored calibration parameters are unreadable; ignoring them")
            return None
        errors = validate_parameters(params)
        if errors:
            logger.warning(f"Stored calibration parameters invalid: {errors}")
            return None
        return params

    def _is_stale(self) -> bool:
        if not self._params:
            return False
        max_age = timedelta(days=self.config.max_recalibration_age_days)
        return utc_now() - self._params.fitted_at > max_age

    async def _check_auto_fit(self) -> None:
        current = await self.dataset.completed_race_count()
        new_races = current - self._last_race_count

        initial = current >= self.config.min_races_required and self._params is None
        new_data = self._params is not None and new_races >= self.config.recalibration_threshold
        too_old = self._is_stale()

        if initial or new_data or too_old:
            logger.info(
                f"Auto-triggering calibration fit (initial={initial}, new_data={new_data}, "
                f"too_old={too_old}, races={current}, last_fit_races={self._last_race_count})"
            )
            self.pending_fit = asyncio.create_task(self._background_fit())

    async def _background_fit(self) -> None:
        try:
            await self.fit_from_historical_data()
        except Exception as e:
            logger.error(f"Background calibration fit failed: {e}", exc_info=True)

    async def wait_for_pending_fit(self) -> None:
        """Block until any auto-triggered fit has finished."""
        if self.pending_fit is not None and not self.pending_fit.done():
            await self.pending_fit

    # ──────────────────────────────────────────────
    # Readiness and fitting
    # ──────────────────────────────────────────────

    async def check_readiness(self) -> bool:
        """Fit when the threshold is newly crossed or a refresh is due.

        Safe to poll; returns whether calibration is active afterwards.
        """
        await self.initialize()
        await self.wait_for_pending_fit()

        try:
            if not self.is_ready:
                if await self.dataset.is_calibration_ready():
                    await self.fit_from_historical_data()
            elif await self.needs_recalibration():
                await self.fit_from_historical_data()
        except Exception as e:
            logger.error(f"Calibration readiness check failed: {e}", exc_info=True)
        return self.is_ready

    async def fit_from_historical_data(self) -> Optional[PlattParameters]:
        """Fit on every completed entry and make the result the active transform.

        Returns None (leaving the current transform in place) when there is
        not enough data, the fit fails or the fitted parameters are invalid.
        """
        await self.initialize()

        try:
            async with self._fit_lock:
                return await self._fit_locked()
        except Exception as e:
            logger.error(f"Calibration fit failed: {e}", exc_info=True)
            return None

    async def _fit_locked(self) -> Optional[PlattParameters]:
        entries = await self.dataset.get_all_completed_entries()
        required = self.config.min_races_required
        if len(entries) < required:
            logger.info(f"Not enough data for calibration: {len(entries)} entries (need {required})")
            return None

        predictions, outcomes = _valid_pairs(entries)
        if len(predictions) < required:
            logger.info(
                f"Not enough valid predictions for calibration: {len(predictions)} (need {required})"
            )
            return None

        baseline, result = await asyncio.to_thread(
            _run_fit, predictions, outcomes, self.config.fitting,
        )
        logger.info(
            f"Uncalibrated baseline: brier={baseline['brier_score']:.4f} "
            f"log_loss={baseline['log_loss']:.4f}"
        )
        if result is None:
            logger.warning("Calibration fit failed")
            return None

        params = result.parameters
        errors = validate_parameters(params)
        if errors:
            logger.warning(
                f"Rejected fitted calibration A={params.a:.4f} B={params.b:.4f}: {errors}"
            )
            return None

        if params.brier_score > baseline["brier_score"]:
            # Kept anyway: log loss is what the fit optimizes
            logger.warning(
                f"Calibration did not improve Brier score "
                f"({baseline['brier_score']:.4f} -> {params.brier_score:.4f})"
            )

        self._params = params
        self.state = CalibrationState.READY
        race_count = await self.dataset.completed_race_count()
        self._last_race_count = race_count

        await self.store.put_meta(PARAMETERS_KEY, serialize_parameters(params))
        await self.store.put_meta(LAST_RACE_COUNT_KEY, race_count)
        await self._append_history(params)

        improvement = 0.0
        if baseline["brier_score"] > 0:
            improvement = (baseline["brier_score"] - params.brier_score) / baseline["brier_score"] * 100
        logger.info(
            f"Calibration complete: A={params.a:.4f} B={params.b:.4f} "
            f"brier={params.brier_score:.4f} ({improvement:.1f}% better) "
            f"entries={params.races_used} races={race_count}"
        )
        return params

    async def _append_history(self, params: PlattParameters) -> None:
        history = await self.store.get_meta(HISTORY_KEY, [])
        if not isinstance(history, list):
            history = []
        history.append(serialize_parameters(params))
        await self.store.put_meta(HISTORY_KEY, history[-self.config.history_limit:])

    async def recalibrate(self) -> Optional[PlattParameters]:
        """Fit now, ignoring the recalibration triggers."""
        logger.info("Forced recalibration requested")
        await self.initialize()
        await self.wait_for_pending_fit()
        return await self.fit_from_historical_data()

    async def needs_recalibration(self) -> bool:
        await self.initialize()
        if not self.is_ready:
            return False
        new_races = await self.dataset.completed_race_count() - self._last_race_count
        return new_races >= self.config.recalibration_threshold or self._is_stale()

    # ──────────────────────────────────────────────
    # Applying the transform
    # ──────────────────────────────────────────────

    def calibrate(self, raw_probability: float) -> float:
        if not self.is_ready:
            return raw_probability
        return calibrate_probability(raw_probability, self._params)

    def calibrate_field(self, raw_probabilities: list[float]) -> list[float]:
        if not self.is_ready:
            return list(raw_probabilities)
        return calibrate_field(raw_probabilities, self._params)

    def get_parameters(self) -> Optional[PlattParameters]:
        return self._params if self.is_ready else None

    def get_metrics(self) -> Optional[dict[str, float]]:
        if not self.is_ready:
            return None
        return {
            "brier_score": self._params.brier_score,
            "log_loss": self._params.log_loss,
            "races_used": self._params.races_used,
        }

    # ──────────────────────────────────────────────
    # Reporting
    # ──────────────────────────────────────────────

    async def get_status(self) -> CalibrationStatus:
        await self.initialize()

        required = self.config.min_races_required
        total = await self.dataset.completed_race_count()
        params = self._params if self.is_ready else None
        return CalibrationStatus(
            is_ready=self.is_ready,
            total_races=total,
            races_needed=max(0, required - total),
            progress_percent=round(min(100.0, total / required * 100), 1),
            needs_recalibration=await self.needs_recalibration(),
            last_fitted_at=params.fitted_at if params else None,
            races_used_in_calibration=params.races_used if params else 0,
            metrics={"brier_score": params.brier_score, "log_loss": params.log_loss} if params else None,
        )

    async def run_cross_validation(self, folds: int = 5, rng=None) -> Optional[CrossValidationResult]:
        """k-fold stability check on the current data; None when data is short."""
        predictions, outcomes = _valid_pairs(await self.dataset.get_all_completed_entries())
        if len(predictions) < self.config.min_races_required:
            return None
        return await asyncio.to_thread(
            cross_validate_platt, predictions, outcomes, folds, self.config.fitting, rng,
        )

    async def get_comprehensive_metrics(self) -> Optional[ComprehensiveMetrics]:
        """All metrics for the active transform over every completed entry."""
        await self.initialize()
        predictions, outcomes = _valid_pairs(await self.dataset.get_all_completed_entries())
        if not predictions:
            return None
        calibrated = [self.calibrate(p) for p in predictions]
        return calculate_all_metrics(calibrated, outcomes)

    async def get_history(self) -> list[PlattParameters]:
        history = await self.store.get_meta(HISTORY_KEY, [])
        if not isinstance(history, list):
            return []
        snapshots = [deserialize_parameters(item) for item in history if isinstance(item, dict)]
        return [s for s in snapshots if s is not None]

    async def reset(self) -> None:
        """Drop the active and persisted transform; fit history is kept."""
        await self.initialize()
        await self.wait_for_pending_fit()
        async with self._fit_lock:
            self._params = None
            self._last_race_count = 0
            self.state = CalibrationState.NOT_READY
            await self.store.delete_meta(PARAMETERS_KEY)
            await self.store.delete_meta(LAST_RACE_COUNT_KEY)
        logger.info("Calibration reset")


def create_calibration_manager(settings: Settings, store: CalibrationStore) -> CalibrationManager:
    config = CalibrationManagerConfig(
        min_races_required=settings.calibration_threshold,
        recalibration_threshold=settings.recalibration_threshold,
        max_recalibration_age_days=settings.max_recalibration_age_days,
        history_limit=settings.history_limit,
    )
    dataset = DatasetManager(
        store,
        calibration_threshold=settings.calibration_threshold,
        minimum_races=settings.minimum_calibration_races,
    )
    return CalibrationManager(store, config=config, dataset=dataset)
