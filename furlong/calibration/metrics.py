"""Scoring rules and calibration diagnostics for win probabilities.

All functions take parallel lists of predicted probabilities and boolean
win outcomes. Mismatched or empty inputs return the worst score for that
metric instead of raising.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from furlong.calibration.stats import (
    bucket_label,
    calculate_confidence_interval,
    calculate_standard_error,
    get_bucket_index,
    is_calibration_reliable,
)

logger = logging.getLogger(__name__)

LOG_LOSS_EPSILON = 1e-15

DEFAULT_NUM_BUCKETS = 10

# Buckets with fewer samples are ignored by the max calibration error
MIN_BUCKET_SAMPLES = 5

BRIER_SCORE_REFERENCE = {
    "perfect": 0.0,
    "excellent": 0.10,
    "good": 0.15,
    "fair": 0.20,
    "random": 0.25,
    "poor": 0.30,
    "worst": 1.0,
}


def _valid_pairs(predictions: list[float], outcomes: list[bool]) -> list[tuple[float, bool]]:
    return [(p, o) for p, o in zip(predictions, outcomes) if p is not None and math.isfinite(p)]


def calculate_brier_score(predictions: list[float], outcomes: list[bool]) -> float:
    """Mean squared error between probability and outcome (0 best, 1 worst)."""
    if not predictions or len(predictions) != len(outcomes):
        return 1.0
    pairs = _valid_pairs(predictions, outcomes)
    if not pairs:
        return 1.0
    return sum((p - (1.0 if o else 0.0)) ** 2 for p, o in pairs) / len(pairs)


def calculate_brier_skill_score(predictions: list[float], outcomes: list[bool]) -> float:
    """``1 - brier / baseline`` where the baseline always predicts the base rate.

    Positive means the model beats the base rate; 0 when the baseline is
    already perfect (all wins or all losses).
    """
    if not predictions or len(predictions) != len(outcomes):
        return 0.0
    base_rate = sum(1 for o in outcomes if o) / len(outcomes)
    baseline = calculate_brier_score([base_rate] * len(outcomes), outcomes)
    if baseline == 0:
        return 0.0
    return 1.0 - calculate_brier_score(predictions, outcomes) / baseline


def calculate_log_loss(predictions: list[float], outcomes: list[bool]) -> float:
    """Mean negative log-likelihood; predictions are kept 1e-15 away from 0 and 1."""
    if not predictions or len(predictions) != len(outcomes):
        return math.inf
    pairs = _valid_pairs(predictions, outcomes)
    if not pairs:
        return math.inf

    total = 0.0
    for p, o in pairs:
        p = min(1 - LOG_LOSS_EPSILON, max(LOG_LOSS_EPSILON, p))
        total -= math.log(p) if o else math.log(1 - p)
    return total / len(pairs)


@dataclass
class _Bucket:
    predicted_sum: float = 0.0
    wins: int = 0
    count: int = 0

    @property
    def avg_predicted(self) -> float:
        return self.predicted_sum / self.count if self.count else 0.0

    @property
    def win_rate(self) -> float:
        return self.wins / self.count if self.count else 0.0


def _fill_buckets(
    predictions: list[float], outcomes: list[bool], num_buckets: int,
) -> list[_Bucket]:
    buckets = [_Bucket() for _ in range(num_buckets)]
    for p, o in _valid_pairs(predictions, outcomes):
        bucket = buckets[get_bucket_index(p, num_buckets)]
        bucket.predicted_sum += p
        bucket.count += 1
        if o:
            bucket.wins += 1
    return buckets


def calculate_expected_calibration_error(
    predictions: list[float], outcomes: list[bool], num_buckets: int = DEFAULT_NUM_BUCKETS,
) -> float:
    """Population-weighted mean gap between predicted and actual win rate."""
    if not predictions or len(predictions) != len(outcomes):
        return 1.0
    buckets = _fill_buckets(predictions, outcomes, num_buckets)
    total = sum(b.count for b in buckets)
    if total == 0:
        return 1.0
    return sum(
        (b.count / total) * abs(b.avg_predicted - b.win_rate)
        for b in buckets if b.count
    )


def calculate_max_calibration_error(
    predictions: list[float], outcomes: list[bool], num_buckets: int = DEFAULT_NUM_BUCKETS,
) -> float:
    """Worst single-bucket gap among buckets with at least 5 samples."""
    if not predictions or len(predictions) != len(outcomes):
        return 1.0
    buckets = _fill_buckets(predictions, outcomes, num_buckets)
    gaps = [
        abs(b.avg_predicted - b.win_rate)
        for b in buckets if b.count >= MIN_BUCKET_SAMPLES
    ]
    return max(gaps) if gaps else 0.0


@dataclass
class ReliabilityBucket:
    label: str
    predicted: float
    actual: float
    count: int
    standard_error: float
    ci_low: float = 0.0
    ci_high: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket": self.label,
            "predicted": round(self.predicted, 4),
            "actual": round(self.actual, 4),
            "count": self.count,
            "standard_error": round(self.standard_error, 4),
            "ci_95": [round(self.ci_low, 4), round(self.ci_high, 4)],
        }


def generate_reliability_diagram(
    predictions: list[float], outcomes: list[bool], num_buckets: int = DEFAULT_NUM_BUCKETS,
) -> list[ReliabilityBucket]:
    """One row per non-empty bucket: average predicted vs actual win rate."""
    if not predictions or len(predictions) != len(outcomes):
        return []
    width = 1.0 / num_buckets
    rows = []
    for i, b in enumerate(_fill_buckets(predictions, outcomes, num_buckets)):
        if not b.count:
            continue
        ci = calculate_confidence_interval(b.win_rate, b.count)
        rows.append(ReliabilityBucket(
            label=bucket_label(i, width),
            predicted=b.avg_predicted,
            actual=b.win_rate,
            count=b.count,
            standard_error=calculate_standard_error(b.win_rate, b.count),
            ci_low=ci[0],
            ci_high=ci[1],
        ))
    return rows


@dataclass
class ComprehensiveMetrics:
    brier_score: float
    brier_skill_score: float
    log_loss: float
    expected_calibration_error: float
    max_calibration_error: float
    reliability_diagram: list[ReliabilityBucket] = field(default_factory=list)
    sample_size: int = 0
    win_rate: float = 0.0
    avg_predicted: float = 0.0
    reliable: bool = False  # Enough samples overall and per bucket

    def to_dict(self) -> dict[str, Any]:
        return {
            "brier_score": round(self.brier_score, 4),
            "brier_skill_score": round(self.brier_skill_score, 4),
            "log_loss": round(self.log_loss, 4) if math.isfinite(self.log_loss) else None,
            "expected_calibration_error": round(self.expected_calibration_error, 4),
            "max_calibration_error": round(self.max_calibration_error, 4),
            "reliability_diagram": [r.to_dict() for r in self.reliability_diagram],
            "sample_size": self.sample_size,
            "win_rate": round(self.win_rate, 4),
            "avg_predicted": round(self.avg_predicted, 4),
            "reliable": self.reliable,
            "brier_rating": interpret_brier_score(self.brier_score),
            "calibration_rating": interpret_calibration_error(self.expected_calibration_error),
        }


def calculate_all_metrics(
    predictions: list[float], outcomes: list[bool], num_buckets: int = DEFAULT_NUM_BUCKETS,
) -> ComprehensiveMetrics:
    n = len(predictions)
    wins = sum(1 for o in outcomes if o)
    diagram = generate_reliability_diagram(predictions, outcomes, num_buckets)
    return ComprehensiveMetrics(
        brier_score=calculate_brier_score(predictions, outcomes),
        brier_skill_score=calculate_brier_skill_score(predictions, outcomes),
        log_loss=calculate_log_loss(predictions, outcomes),
        expected_calibration_error=calculate_expected_calibration_error(
            predictions, outcomes, num_buckets
        ),
        max_calibration_error=calculate_max_calibration_error(predictions, outcomes, num_buckets),
        reliability_diagram=diagram,
        sample_size=n,
        win_rate=wins / len(outcomes) if outcomes else 0.0,
        avg_predicted=sum(predictions) / n if n else 0.0,
        reliable=is_calibration_reliable(n, [row.count for row in diagram]),
    )


def _pct_reduction(before: float, after: float) -> float:
    if before == 0 or not math.isfinite(before) or not math.isfinite(after):
        return 0.0
    return (before - after) / before * 100


def calculate_calibration_improvement(
    before: ComprehensiveMetrics, after: ComprehensiveMetrics,
) -> dict[str, Any]:
    """Percentage reductions (positive = better) from ``before`` to ``after``."""
    brier = _pct_reduction(before.brier_score, after.brier_score)
    log_loss = _pct_reduction(before.log_loss, after.log_loss)
    ece = _pct_reduction(before.expected_calibration_error, after.expected_calibration_error)
    return {
        "brier_improvement_pct": round(brier, 2),
        "log_loss_improvement_pct": round(log_loss, 2),
        "ece_improvement_pct": round(ece, 2),
        "improved": brier > 0 and ece > 0,
    }


def interpret_brier_score(score: float) -> str:
    if score < BRIER_SCORE_REFERENCE["excellent"]:
        return "Excellent"
    if score < BRIER_SCORE_REFERENCE["good"]:
        return "Good"
    if score < BRIER_SCORE_REFERENCE["fair"]:
        return "Fair"
    if score < BRIER_SCORE_REFERENCE["random"]:
        return "Below Average"
    return "Poor"


def interpret_calibration_error(ece: float) -> str:
    if ece < 0.02:
        return "Excellent calibration"
    if ece < 0.05:
        return "Good calibration"
    if ece < 0.10:
        return "Fair calibration"
    if ece < 0.15:
        return "Needs improvement"
    return "Poor calibration"
