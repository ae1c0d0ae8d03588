"""
Scoring primitives for binary probability forecasts.

Computes Brier score, clamped log loss, percentile ranks within a cohort,
naive baselines, calibration error and rolling-window stability metrics.
All functions are pure; thresholds come in as arguments.
"""

import math
import numbers
from typing import Dict, List, Optional, Sequence

import numpy as np

EPSILON = 1e-15
WORST_CASE_PROBABILITY = 1e-6
RANDOM_BASELINE_LOG_LOSS = math.log(2)
NEUTRAL_PERCENTILE = 50.0
MIN_COHORT_FOR_PERCENTILE = 3
MIN_SAMPLES_FOR_CALIBRATION = 20


class ScoringError(Exception):
    """Raised when scoring fails."""
    pass


def _check_probability(p) -> float:
    if isinstance(p, bool) or not isinstance(p, numbers.Real):
        raise TypeError(f"Probability must be numeric, got {type(p).__name__}")
    return float(p)


def _check_label(y) -> bool:
    if not isinstance(y, (bool, np.bool_)):
        raise TypeError(f"Label must be boolean, got {type(y).__name__}")
    return bool(y)


def is_valid_probability(p) -> bool:
    """True if p is a finite real number within [0, 1]."""
    if p is None or isinstance(p, bool) or not isinstance(p, numbers.Real):
        return False
    return math.isfinite(p) and 0.0 <= p <= 1.0


def brier_score(p: float, y: bool) -> float:
    """Squared error between probability and outcome. No clamping."""
    outcome = 1.0 if y else 0.0
    return (p - outcome) ** 2


def log_loss(p: float, y: bool, epsilon: float = EPSILON) -> float:
    """
    Binary cross-entropy of a single prediction.

    The probability is clamped to [epsilon, 1 - epsilon] so the result is
    always finite.

    Args:
        p: Predicted probability the event occurs
        y: Observed outcome
        epsilon: Clamp width

    Returns:
        -log(p) if y else -log(1 - p)
    """
    clamped = min(max(p, epsilon), 1.0 - epsilon)
    return -math.log(clamped) if y else -math.log(1.0 - clamped)


def safe_log_loss(
    p,
    y: bool,
    epsilon: float = EPSILON,
    worst_case_probability: float = WORST_CASE_PROBABILITY
) -> float:
    """
    Log loss that tolerates invalid predictions.

    A missing, non-numeric, non-finite or out-of-range probability scores as
    if the model had put worst_case_probability on the observed outcome.
    """
    if not is_valid_probability(p):
        return -math.log(worst_case_probability)
    return log_loss(float(p), y, epsilon)


def _check_lengths(probabilities: Sequence, labels: Sequence) -> None:
    if len(probabilities) != len(labels):
        raise ScoringError(
            f"Length mismatch: {len(probabilities)} probabilities vs {len(labels)} labels"
        )


def mean_brier_score(probabilities: Sequence[float], labels: Sequence[bool]) -> float:
    """
    Mean Brier score over paired predictions and outcomes.

    Returns NaN for empty input.

    Raises:
        ScoringError: If the sequences differ in length
        TypeError: On non-numeric probabilities or non-boolean labels
    """
    _check_lengths(probabilities, labels)
    if len(probabilities) == 0:
        return float("nan")
    total = 0.0
    for p, y in zip(probabilities, labels):
        total += brier_score(_check_probability(p), _check_label(y))
    return total / len(probabilities)


def mean_log_loss(
    probabilities: Sequence[float],
    labels: Sequence[bool],
    epsilon: float = EPSILON
) -> float:
    """
    Mean clamped log loss over paired predictions and outcomes.

    Returns NaN for empty input.

    Raises:
        ScoringError: If the sequences differ in length
        TypeError: On non-numeric probabilities or non-boolean labels
    """
    _check_lengths(probabilities, labels)
    if len(probabilities) == 0:
        return float("nan")
    total = 0.0
    for p, y in zip(probabilities, labels):
        total += log_loss(_check_probability(p), _check_label(y), epsilon)
    return total / len(probabilities)


def percentile_ranks(
    mean_losses: Dict[str, Dict[str, float]],
    horizons: Sequence[str],
    min_cohort: int = MIN_COHORT_FOR_PERCENTILE,
    neutral: float = NEUTRAL_PERCENTILE
) -> Dict[str, Dict[str, float]]:
    """
    Percentile rank of each model's mean loss within its horizon cohort.

    For a cohort of n models sorted ascending by loss, the model at rank r
    (0 = best) gets 100 * (n - 1 - r) / (n - 1). Tied losses share the mean
    of their ranks. Cohorts smaller than min_cohort give every member the
    neutral percentile. Models without a finite loss on a horizon are not
    part of that horizon's cohort and get no entry for it.

    Args:
        mean_losses: {model_id: {horizon: mean_loss}}
        horizons: Horizons to rank
        min_cohort: Minimum cohort size for a real ranking
        neutral: Percentile assigned to under-sized cohorts

    Returns:
        {model_id: {horizon: percentile}}
    """
    result: Dict[str, Dict[str, float]] = {model_id: {} for model_id in mean_losses}

    for horizon in horizons:
        cohort = []
        for model_id, by_horizon in mean_losses.items():
            loss = by_horizon.get(horizon)
            if loss is not None and math.isfinite(loss):
                cohort.append((loss, model_id))

        n = len(cohort)
        if n == 0:
            continue
        if n < min_cohort:
            for _, model_id in cohort:
                result[model_id][horizon] = neutral
            continue

        cohort.sort(key=lambda item: (item[0], item[1]))
        i = 0
        while i < n:
            j = i
            while j + 1 < n and cohort[j + 1][0] == cohort[i][0]:
                j += 1
            avg_rank = (i + j) / 2.0
            pct = 100.0 * (n - 1 - avg_rank) / (n - 1)
            for k in range(i, j + 1):
                result[cohort[k][1]][horizon] = pct
            i = j + 1

    return result


def prevalence(labels: Sequence[bool]) -> Optional[float]:
    """Fraction of true labels, or None when there are none."""
    if not labels:
        return None
    return sum(1 for y in labels if y) / len(labels)


def prevalence_log_loss(count_true: int, count_false: int) -> float:
    """
    Log loss of always predicting the observed prevalence.

    Returns 0 when there are no labels or every label is the same.
    """
    total = count_true + count_false
    if total == 0 or count_true == 0 or count_false == 0:
        return 0.0
    p_true = count_true / total
    return -(p_true * math.log(p_true) + (1.0 - p_true) * math.log(1.0 - p_true))


def random_baseline_log_loss() -> float:
    """Log loss of always predicting 0.5."""
    return RANDOM_BASELINE_LOG_LOSS


def constant_baseline_log_losses(labels: Sequence[bool], epsilon: float = EPSILON) -> Dict[str, float]:
    """
    Log loss of the trivial constant predictors on a label set.

    Returns:
        Dict with always_true, always_false, random and best (the smallest
        of the three). Empty dict when labels is empty.
    """
    if not labels:
        return {}
    n = len(labels)
    count_true = sum(1 for y in labels if y)
    count_false = n - count_true
    always_true = count_false * -math.log(epsilon) / n
    always_false = count_true * -math.log(epsilon) / n
    return {
        "always_true": always_true,
        "always_false": always_false,
        "random": RANDOM_BASELINE_LOG_LOSS,
        "best": min(always_true, always_false, RANDOM_BASELINE_LOG_LOSS),
    }


def brier_skill_score(model_brier: float, baseline_brier: float) -> float:
    """
    Brier skill score relative to a baseline.

    BSS = 1 - model / baseline. Positive is better than the baseline.
    Returns 0 when the baseline Brier is 0.
    """
    if baseline_brier == 0:
        return 0.0
    return 1.0 - model_brier / baseline_brier


def expected_calibration_error(
    probabilities: Sequence[float],
    labels: Sequence[bool],
    n_bins: int = 10,
    min_samples: int = MIN_SAMPLES_FOR_CALIBRATION
) -> float:
    """
    Expected calibration error over equal-width probability bins.

    ECE = sum over bins of (bin_count / n) * |mean_p - observed_rate|.
    Returns NaN when fewer than min_samples predictions are available.

    Raises:
        ScoringError: On length mismatch
    """
    _check_lengths(probabilities, labels)
    n = len(probabilities)
    if n < min_samples or n == 0:
        return float("nan")

    p = np.asarray(probabilities, dtype=float)
    y = np.asarray(labels, dtype=float)
    # p == 1.0 belongs in the top bin
    bins = np.minimum((p * n_bins).astype(int), n_bins - 1)

    ece = 0.0
    for b in range(n_bins):
        mask = bins == b
        count = int(mask.sum())
        if count == 0:
            continue
        ece += (count / n) * abs(float(p[mask].mean()) - float(y[mask].mean()))
    return ece


def median(values: Sequence[float]) -> float:
    """Median of values; NaN for an empty sequence."""
    if len(values) == 0:
        return float("nan")
    return float(np.median(np.asarray(values, dtype=float)))


def rolling_window_means(values: Sequence[float], window: int) -> List[float]:
    """
    Means of every contiguous window of the given size.

    Returns an empty list when there are fewer values than the window.
    """
    if window < 1:
        raise ScoringError(f"Window size must be positive, got {window}")
    arr = np.asarray(values, dtype=float)
    if len(arr) < window:
        return []
    sums = np.convolve(arr, np.ones(window), mode="valid")
    return (sums / window).tolist()


def stability_metrics(values: Sequence[float], window: int) -> Dict[str, Optional[float]]:
    """
    Rolling-window stability summary of a loss series.

    Returns:
        Dict with best_window, worst_window, mean and variance (population)
        of the rolling means. Values are None when the series is shorter
        than the window.
    """
    means = rolling_window_means(values, window)
    if not means:
        return {"best_window": None, "worst_window": None, "mean": None, "variance": None}
    arr = np.asarray(means)
    return {
        "best_window": float(arr.min()),
        "worst_window": float(arr.max()),
        "mean": float(arr.mean()),
        "variance": float(arr.var()),
    }
