"""Estimate Platt parameters from logged predictions and outcomes.

Gradient descent on regularized log loss is the primary fitter; grid search
is a brute-force fallback; k-fold cross-validation measures how stable the
estimate is on held-out data.
"""

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Optional

from furlong.calibration.platt import (
    MAX_PARAMETER_MAGNITUDE,
    PlattParameters,
    logit,
    sigmoid,
)
from furlong.calibration.stats import mean, population_std_dev
from furlong.config import utc_now

logger = logging.getLogger(__name__)

MIN_VALID_PREDICTIONS = 10
LOG_LOSS_EPSILON = 1e-15


@dataclass
class FittingConfig:
    """Gradient descent settings."""

    learning_rate: float = 0.01
    max_iterations: int = 1000
    convergence_threshold: float = 1e-6
    regularization: float = 0.001  # L2 penalty on A and B

    def __post_init__(self):
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.convergence_threshold <= 0:
            raise ValueError("convergence_threshold must be positive")
        if self.regularization < 0:
            raise ValueError("regularization cannot be negative")


@dataclass
class FittingResult:
    parameters: PlattParameters
    converged: bool
    iterations: int
    final_log_loss: float
    loss_history: list[float] = field(default_factory=list)


@dataclass
class FoldResult:
    brier_score: float
    log_loss: float
    parameters: PlattParameters


@dataclass
class CrossValidationResult:
    avg_brier_score: float = 1.0
    avg_log_loss: float = math.inf
    brier_std_dev: float = 0.0
    log_loss_std_dev: float = 0.0
    folds: list[FoldResult] = field(default_factory=list)


@dataclass
class ParameterRange:
    start: float
    stop: float
    step: float = 0.1

    def values(self) -> list[float]:
        """Inclusive grid; counted in steps so float drift can't drop the endpoint."""
        if self.step <= 0 or self.stop < self.start:
            return [self.start]
        n = int(round((self.stop - self.start) / self.step))
        return [round(self.start + i * self.step, 10) for i in range(n + 1)]


DEFAULT_A_RANGE = ParameterRange(0.5, 2.0, 0.1)
DEFAULT_B_RANGE = ParameterRange(-1.0, 1.0, 0.1)


def _transformed(raw: float, a: float, b: float) -> float:
    return sigmoid(a * logit(raw) + b)


def _log_loss(predictions: list[float], outcomes: list[bool], a: float, b: float) -> float:
    if not predictions:
        return math.inf
    total = 0.0
    for raw, won in zip(predictions, outcomes):
        p = min(1 - LOG_LOSS_EPSILON, max(LOG_LOSS_EPSILON, _transformed(raw, a, b)))
        total -= math.log(p) if won else math.log(1 - p)
    return total / len(predictions)


def _brier(predictions: list[float], outcomes: list[bool], a: float, b: float) -> float:
    if not predictions:
        return 1.0
    return sum(
        (_transformed(raw, a, b) - (1.0 if won else 0.0)) ** 2
        for raw, won in zip(predictions, outcomes)
    ) / len(predictions)


def calculate_gradients(
    predictions: list[float],
    outcomes: list[bool],
    a: float,
    b: float,
    regularization: float = 0.001,
) -> tuple[float, float]:
    """Gradient of regularized log loss with respect to (A, B)."""
    if not predictions or len(predictions) != len(outcomes):
        return 0.0, 0.0

    sum_a = sum_b = 0.0
    for raw, won in zip(predictions, outcomes):
        x = logit(raw)
        error = sigmoid(a * x + b) - (1.0 if won else 0.0)
        sum_a += error * x
        sum_b += error

    n = len(predictions)
    return sum_a / n + regularization * a, sum_b / n + regularization * b


def _valid_points(
    predictions: list[float], outcomes: list[bool],
) -> tuple[list[float], list[bool]]:
    """Keep finite, strictly interior probabilities."""
    preds, outs = [], []
    for p, o in zip(predictions, outcomes):
        if p is not None and math.isfinite(p) and 0 < p < 1:
            preds.append(p)
            outs.append(bool(o))
    return preds, outs


def _clamp_param(value: float) -> float:
    return max(-MAX_PARAMETER_MAGNITUDE, min(MAX_PARAMETER_MAGNITUDE, value))


def fit_platt_gradient_descent(
    predictions: list[float],
    outcomes: list[bool],
    config: Optional[FittingConfig] = None,
) -> Optional[FittingResult]:
    """Fit (A, B) by batch gradient descent, starting from the identity.

    Returns None when inputs are empty, mismatched or have fewer than 10
    usable predictions.
    """
    cfg = config or FittingConfig()

    if not predictions:
        logger.warning("Platt fit skipped: no predictions provided")
        return None
    if len(predictions) != len(outcomes):
        logger.warning(
            f"Platt fit skipped: {len(predictions)} predictions vs {len(outcomes)} outcomes"
        )
        return None

    preds, outs = _valid_points(predictions, outcomes)
    if len(preds) < MIN_VALID_PREDICTIONS:
        logger.warning(
            f"Platt fit skipped: {len(preds)} valid predictions "
            f"(need {MIN_VALID_PREDICTIONS})"
        )
        return None

    a, b = 1.0, 0.0
    loss_history = []
    converged = False
    iteration = 0

    for iteration in range(cfg.max_iterations):
        loss_history.append(_log_loss(preds, outs, a, b))

        grad_a, grad_b = calculate_gradients(preds, outs, a, b, cfg.regularization)
        if math.hypot(grad_a, grad_b) < cfg.convergence_threshold:
            converged = True
            break

        a = _clamp_param(a - cfg.learning_rate * grad_a)
        b = _clamp_param(b - cfg.learning_rate * grad_b)
    else:
        iteration = cfg.max_iterations

    final_log_loss = _log_loss(preds, outs, a, b)
    final_brier = _brier(preds, outs, a, b)

    logger.info(
        f"Platt fit: A={a:.4f} B={b:.4f} brier={final_brier:.4f} "
        f"log_loss={final_log_loss:.4f} converged={converged} iterations={iteration}"
    )

    return FittingResult(
        parameters=PlattParameters(
            a=a,
            b=b,
            fitted_at=utc_now(),
            races_used=len(preds),
            brier_score=final_brier,
            log_loss=final_log_loss,
        ),
        converged=converged,
        iterations=iteration,
        final_log_loss=final_log_loss,
        loss_history=loss_history,
    )


def fit_platt_parameters(
    predictions: list[float],
    outcomes: list[bool],
    config: Optional[FittingConfig] = None,
) -> Optional[PlattParameters]:
    result = fit_platt_gradient_descent(predictions, outcomes, config)
    return result.parameters if result else None


def fit_platt_grid_search(
    predictions: list[float],
    outcomes: list[bool],
    a_range: ParameterRange = DEFAULT_A_RANGE,
    b_range: ParameterRange = DEFAULT_B_RANGE,
) -> Optional[FittingResult]:
    """Exhaustively evaluate log loss over an (A, B) grid and keep the best cell."""
    if not predictions or len(predictions) != len(outcomes):
        return None
    preds, outs = _valid_points(predictions, outcomes)
    if not preds:
        return None

    best_a, best_b, best_loss = 1.0, 0.0, math.inf
    cells = 0
    for a in a_range.values():
        for b in b_range.values():
            cells += 1
            loss = _log_loss(preds, outs, a, b)
            if loss < best_loss:
                best_a, best_b, best_loss = a, b, loss

    return FittingResult(
        parameters=PlattParameters(
            a=best_a,
            b=best_b,
            fitted_at=utc_now(),
            races_used=len(preds),
            brier_score=_brier(preds, outs, best_a, best_b),
            log_loss=best_loss,
        ),
        converged=True,
        iterations=cells,
        final_log_loss=best_loss,
    )


def cross_validate_platt(
    predictions: list[float],
    outcomes: list[bool],
    folds: int = 5,
    config: Optional[FittingConfig] = None,
    rng: Optional[random.Random] = None,
) -> CrossValidationResult:
    """k-fold cross-validation of the gradient descent fitter.

    Indices are shuffled (Fisher-Yates via ``Random.shuffle``) then cut into
    contiguous folds; the last fold takes the remainder. Needs at least two
    samples per fold.
    """
    if folds < 2 or len(predictions) != len(outcomes) or len(predictions) < folds * 2:
        logger.warning(
            f"Cross-validation skipped: {len(predictions)} samples for {folds} folds"
        )
        return CrossValidationResult()

    indices = list(range(len(predictions)))
    (rng or random.Random()).shuffle(indices)
    fold_size = len(indices) // folds

    results = []
    for fold in range(folds):
        start = fold * fold_size
        end = len(indices) if fold == folds - 1 else start + fold_size
        test_idx = indices[start:end]
        train_idx = indices[:start] + indices[end:]

        fit = fit_platt_gradient_descent(
            [predictions[i] for i in train_idx],
            [outcomes[i] for i in train_idx],
            config,
        )
        if fit is None:
            continue

        test_preds, test_outs = _valid_points(
            [predictions[i] for i in test_idx], [outcomes[i] for i in test_idx]
        )
        params = fit.parameters
        results.append(FoldResult(
            brier_score=_brier(test_preds, test_outs, params.a, params.b),
            log_loss=_log_loss(test_preds, test_outs, params.a, params.b),
            parameters=params,
        ))

    if not results:
        return CrossValidationResult()

    briers = [r.brier_score for r in results]
    losses = [r.log_loss for r in results]
    return CrossValidationResult(
        avg_brier_score=mean(briers),
        avg_log_loss=mean(losses),
        brier_std_dev=population_std_dev(briers),
        log_loss_std_dev=population_std_dev(losses),
        folds=results,
    )


def evaluate_uncalibrated(predictions: list[float], outcomes: list[bool]) -> dict[str, float]:
    """Brier score and log loss of the raw predictions (identity transform)."""
    return {
        "brier_score": _brier(predictions, outcomes, 1.0, 0.0),
        "log_loss": _log_loss(predictions, outcomes, 1.0, 0.0),
    }
