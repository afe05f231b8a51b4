"""Small statistical helpers shared by the dataset manager and metrics."""

import math

# Probability bucket edges: 0.0, 0.1, ..., 1.0
PROBABILITY_BUCKET_EDGES = [round(i * 0.1, 1) for i in range(11)]

# Minimums for a trustworthy reliability analysis
MIN_TOTAL_SAMPLES = 500
MIN_SAMPLES_PER_BUCKET = 5


def get_bucket_index(probability: float, num_buckets: int = 10) -> int:
    """Bucket index for ``probability``; 1.0 lands in the top bucket."""
    if not math.isfinite(probability) or probability <= 0:
        return 0
    return min(int(probability * num_buckets), num_buckets - 1)


def bucket_label(index: int, width: float = 0.1, precision: int = 2) -> str:
    """``"0.10-0.20"`` style label for bucket ``index``."""
    lo = index * width
    hi = lo + width
    return f"{lo:.{precision}f}-{hi:.{precision}f}"


def calculate_standard_error(proportion: float, sample_size: int) -> float:
    """Binomial standard error ``sqrt(p(1-p)/n)``; 0 for n <= 1."""
    if sample_size <= 1:
        return 0.0
    return math.sqrt(proportion * (1 - proportion) / sample_size)


def calculate_confidence_interval(
    proportion: float, sample_size: int, z: float = 1.96,
) -> tuple[float, float]:
    """Normal-approximation interval, clamped to [0, 1]."""
    margin = z * calculate_standard_error(proportion, sample_size)
    return max(0.0, proportion - margin), min(1.0, proportion + margin)


def is_calibration_reliable(
    total_samples: int,
    bucket_counts: list[int],
    min_total: int = MIN_TOTAL_SAMPLES,
    min_per_bucket: int = MIN_SAMPLES_PER_BUCKET,
) -> bool:
    """True when there are enough samples overall and in every populated bucket."""
    if total_samples < min_total:
        return False
    return all(c >= min_per_bucket for c in bucket_counts if c > 0)


def mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def population_std_dev(values: list[float]) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    avg = mean(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))
