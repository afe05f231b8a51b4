"""Platt scaling: ``calibrated = sigmoid(A * logit(raw) + B)``.

Pure functions only. ``A`` stretches or compresses confidence (A > 1 makes
predictions more extreme), ``B`` shifts everything up or down. The identity
transform is ``A=1, B=0``.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from furlong.config import utc_now

logger = logging.getLogger(__name__)

# logit input bounds
MIN_PROBABILITY = 0.001
MAX_PROBABILITY = 0.999

# Calibrated output bounds
MIN_CALIBRATED = 0.005
MAX_CALIBRATED = 0.995

MAX_PARAMETER_MAGNITUDE = 10.0
IDENTITY_TOLERANCE = 0.001

# Field redistribution
MAX_REDISTRIBUTION_PASSES = 10
SUM_TOLERANCE = 1e-4


@dataclass
class PlattParameters:
    """A fitted transform plus where it came from."""

    a: float
    b: float
    fitted_at: datetime = field(default_factory=utc_now)
    races_used: int = 0
    brier_score: float = 0.0
    log_loss: float = 0.0


def identity_parameters() -> PlattParameters:
    """``A=1, B=0``: no calibration applied."""
    return PlattParameters(a=1.0, b=0.0)


def is_identity(params: PlattParameters, tolerance: float = IDENTITY_TOLERANCE) -> bool:
    return abs(params.a - 1.0) < tolerance and abs(params.b) < tolerance


def logit(p: float) -> float:
    """``ln(p / (1 - p))`` with ``p`` clamped to [0.001, 0.999]."""
    if not math.isfinite(p):
        p = MIN_PROBABILITY
    p = min(MAX_PROBABILITY, max(MIN_PROBABILITY, p))
    return math.log(p / (1.0 - p))


def sigmoid(x: float) -> float:
    """Logistic function, branching on sign so ``exp`` never overflows."""
    if math.isnan(x):
        return 0.5
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def _clamp_output(p: float) -> float:
    return min(MAX_CALIBRATED, max(MIN_CALIBRATED, p))


def calibrate_probability(raw: float, params: PlattParameters) -> float:
    """Calibrate a single probability; non-finite input maps to the lower bound."""
    if raw is None or not math.isfinite(raw):
        return MIN_CALIBRATED
    return _clamp_output(sigmoid(params.a * logit(raw) + params.b))


def clamp_and_redistribute(
    probabilities: list[float],
    min_p: float = MIN_CALIBRATED,
    max_p: float = MAX_CALIBRATED,
    max_passes: int = MAX_REDISTRIBUTION_PASSES,
) -> list[float]:
    """Pin values to [min_p, max_p] while keeping the field summing to 1.

    Each pass clamps out-of-range values and spreads the resulting surplus
    or deficit over the unclamped values in proportion to their size. At
    most ``max_passes`` passes run. When every value is pinned there is
    nothing left to absorb the difference, so the field is flat-normalized
    and left as is. A last renormalize runs if the sum still drifts.
    """
    values = list(probabilities)

    for _ in range(max_passes):
        low = [i for i, p in enumerate(values) if p < min_p]
        high = [i for i, p in enumerate(values) if p > max_p]
        if not low and not high:
            break

        adjustable = [i for i, p in enumerate(values) if min_p <= p <= max_p]

        # Positive excess: mass removed from the top must go somewhere
        excess = sum(values[i] - max_p for i in high) - sum(min_p - values[i] for i in low)

        for i in low:
            values[i] = min_p
        for i in high:
            values[i] = max_p

        if not adjustable:
            total = sum(values)
            if total > 0:
                values = [p / total for p in values]
            break

        if abs(excess) > SUM_TOLERANCE:
            adjustable_sum = sum(values[i] for i in adjustable)
            if adjustable_sum > SUM_TOLERANCE:
                for i in adjustable:
                    values[i] += excess * (values[i] / adjustable_sum)

    total = sum(values)
    if total > 0 and abs(total - 1.0) > SUM_TOLERANCE:
        values = [p / total for p in values]
    return values


def calibrate_field(raw_probabilities: list[float], params: PlattParameters) -> list[float]:
    """Calibrate every runner in a race and renormalize to sum to 1."""
    if not raw_probabilities:
        return []
    if len(raw_probabilities) == 1:
        return [1.0]

    calibrated = [calibrate_probability(p, params) for p in raw_probabilities]
    total = sum(calibrated)
    if total <= 0:
        return [1.0 / len(calibrated)] * len(calibrated)

    normalized = [p / total for p in calibrated]
    return clamp_and_redistribute(normalized)


def serialize_parameters(params: PlattParameters) -> dict[str, Any]:
    """JSON-safe form with an ISO ``fitted_at``."""
    return {
        "a": params.a,
        "b": params.b,
        "fitted_at": params.fitted_at.isoformat(),
        "races_used": params.races_used,
        "brier_score": params.brier_score,
        "log_loss": params.log_loss,
    }


def deserialize_parameters(data: dict[str, Any]) -> Optional[PlattParameters]:
    """Inverse of :func:`serialize_parameters`; None when the payload is unreadable."""
    try:
        fitted_at = datetime.fromisoformat(str(data["fitted_at"]).replace("Z", "+00:00"))
        if fitted_at.tzinfo is None:
            fitted_at = fitted_at.replace(tzinfo=timezone.utc)
        return PlattParameters(
            a=float(data["a"]),
            b=float(data["b"]),
            fitted_at=fitted_at,
            races_used=int(data.get("races_used", 0)),
            brier_score=float(data.get("brier_score", 0.0)),
            log_loss=float(data.get("log_loss", 0.0)),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Unreadable Platt parameters: {e}")
        return None


def validate_parameters(params: PlattParameters) -> list[str]:
    """Reasons ``params`` should not be used (empty list when sane)."""
    errors = []
    if not math.isfinite(params.a):
        errors.append("Parameter A is not finite")
    if not math.isfinite(params.b):
        errors.append("Parameter B is not finite")
    if math.isfinite(params.a):
        if params.a < 0:
            errors.append("Parameter A is negative (would invert predictions)")
        if abs(params.a) > MAX_PARAMETER_MAGNITUDE:
            errors.append(f"Parameter A is extreme: {params.a}")
    if math.isfinite(params.b) and abs(params.b) > MAX_PARAMETER_MAGNITUDE:
        errors.append(f"Parameter B is extreme: {params.b}")
    if not 0 <= params.brier_score <= 1:
        errors.append(f"Brier score out of range: {params.brier_score}")
    if not params.log_loss >= 0:
        errors.append(f"Log loss is negative: {params.log_loss}")
    if params.races_used < 0:
        errors.append(f"Races used is negative: {params.races_used}")
    return errors


def calibration_bounds() -> dict[str, float]:
    return {
        "min_input": MIN_PROBABILITY,
        "max_input": MAX_PROBABILITY,
        "min_output": MIN_CALIBRATED,
        "max_output": MAX_CALIBRATED,
    }
