"""
Validity gates.

Detects degenerate or dishonest prediction behaviour per model per horizon:
low coverage, high failure rate, constant predictors, always-extreme
predictors and confidently-wrong predictors. A failing horizon is
disqualified; the model itself stays in the tournament.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Sequence

import numpy as np

from .config import ValidityConfig
from .state import ModelState, ModelStateStore

logger = logging.getLogger(__name__)

VALIDITY_PHASE = 0


class ValidityFailure(str, Enum):
    COVERAGE = "coverage"
    FAILURE_RATE = "failure_rate"
    CONSTANT_PREDICTOR = "constant_predictor"
    EXTREME_PREDICTIONS = "extreme_predictions"
    EXTREME_WRONG_RATE = "extreme_wrong_rate"


@dataclass
class HorizonValidityResult:
    horizon: str
    is_valid: bool
    failure_reasons: List[ValidityFailure]
    metrics: Dict[str, float]

    def to_dict(self) -> Dict:
        return {
            "horizon": self.horizon,
            "is_valid": self.is_valid,
            "failure_reasons": [r.value for r in self.failure_reasons],
            "metrics": dict(self.metrics),
        }


@dataclass
class ModelValidityResult:
    model_id: str
    valid_horizons: List[str] = field(default_factory=list)
    invalid_horizons: Dict[str, HorizonValidityResult] = field(default_factory=dict)

    @property
    def is_fully_invalid(self) -> bool:
        return not self.valid_horizons and bool(self.invalid_horizons)

    def to_dict(self) -> Dict:
        return {
            "model_id": self.model_id,
            "valid_horizons": list(self.valid_horizons),
            "invalid_horizons": {h: r.to_dict() for h, r in self.invalid_horizons.items()},
            "is_fully_invalid": self.is_fully_invalid,
        }


def compute_validity_metrics(
    predictions: Sequence[float],
    labels: Sequence[bool],
    failed_rounds: int,
    total_rounds: int,
    config: ValidityConfig
) -> Dict[str, float]:
    """
    Raw metrics behind the validity gates for one horizon.

    predictions and labels are the valid predictions and their paired
    outcomes; failed_rounds counts rounds whose prediction was missing or
    invalid, out of total_rounds.
    """
    effective_n = len(predictions)
    coverage = effective_n / total_rounds if total_rounds > 0 else 0.0
    failure_rate = failed_rounds / total_rounds if total_rounds > 0 else 0.0

    unique_p = len({round(p, config.unique_rounding_decimals) for p in predictions})
    p_std = float(np.std(predictions)) if effective_n > 1 else 0.0

    extreme = sum(1 for p in predictions if p >= config.extreme_high or p <= config.extreme_low)
    confident_wrong = sum(
        1 for p, y in zip(predictions, labels)
        if (p > config.confident_high and not y) or (p < config.confident_low and y)
    )

    return {
        "effective_n": effective_n,
        "total_n": total_rounds,
        "coverage": coverage,
        "failure_rate": failure_rate,
        "unique_p": unique_p,
        "p_std_dev": p_std,
        "extreme_prediction_rate": extreme / effective_n if effective_n else 0.0,
        "confident_wrong_rate": confident_wrong / effective_n if effective_n else 0.0,
    }


def check_horizon_validity(
    predictions: Sequence[float],
    labels: Sequence[bool],
    failed_rounds: int,
    total_rounds: int,
    horizon: str,
    config: ValidityConfig
) -> HorizonValidityResult:
    """
    Run every validity gate on one horizon.

    Args:
        predictions: Valid probabilities, in round order
        labels: Outcomes paired with predictions
        failed_rounds: Rounds with a missing or invalid prediction
        total_rounds: Rounds the model took part in
        horizon: Horizon id
        config: Gate thresholds

    Returns:
        HorizonValidityResult listing every failed gate
    """
    m = compute_validity_metrics(predictions, labels, failed_rounds, total_rounds, config)
    reasons = []

    if m["coverage"] < config.min_coverage:
        reasons.append(ValidityFailure.COVERAGE)
    if m["failure_rate"] > config.max_failure_rate:
        reasons.append(ValidityFailure.FAILURE_RATE)
    if (m["unique_p"] <= config.constant_max_unique
            and m["p_std_dev"] <= config.constant_max_std
            and m["effective_n"] > 1):
        reasons.append(ValidityFailure.CONSTANT_PREDICTOR)
    if m["extreme_prediction_rate"] > config.max_extreme_rate:
        reasons.append(ValidityFailure.EXTREME_PREDICTIONS)
    if m["confident_wrong_rate"] > config.max_extreme_wrong_rate:
        reasons.append(ValidityFailure.EXTREME_WRONG_RATE)

    return HorizonValidityResult(horizon, not reasons, reasons, m)


def horizon_series(model: ModelState, horizon: str):
    """
    Split a model's history on one horizon into validity inputs.

    Returns:
        (predictions, labels, failed_rounds, total_rounds)
    """
    predictions, labels = [], []
    failed = 0
    for rs in model.round_scores:
        if horizon in rs.failed_horizons or horizon not in rs.predictions:
            failed += 1
            continue
        predictions.append(rs.predictions[horizon])
        labels.append(rs.labels[horizon])
    return predictions, labels, failed, len(model.round_scores)


def check_model_validity(
    model: ModelState,
    horizons: Sequence[str],
    config: ValidityConfig
) -> ModelValidityResult:
    """Run the validity gates on each of a model's horizons."""
    result = ModelValidityResult(model.model_id)
    for horizon in horizons:
        preds, labels, failed, total = horizon_series(model, horizon)
        hv = check_horizon_validity(preds, labels, failed, total, horizon, config)
        if hv.is_valid:
            result.valid_horizons.append(horizon)
        else:
            result.invalid_horizons[horizon] = hv
    return result


def apply_validity_gates(
    store: ModelStateStore,
    config: ValidityConfig,
    min_rounds: int = 1,
    skip_reasons: Sequence[str] = ()
) -> Dict[str, ModelValidityResult]:
    """
    Disqualify every invalid horizon of every active model.

    Only horizons the model is still qualified on are checked. Models with
    fewer than min_rounds rounds are not judged yet. Failures named in
    skip_reasons are still reported but do not disqualify on their own;
    the sanity phase handles those.

    Returns:
        {model_id: ModelValidityResult} for each model checked
    """
    results = {}
    for model in store.active_models():
        if model.rounds_played < min_rounds:
            continue
        horizons = [h for h in store.horizons if h in model.qualified_horizons]
        result = check_model_validity(model, horizons, config)
        results[model.model_id] = result
        for horizon, hv in result.invalid_horizons.items():
            enforced = [r.value for r in hv.failure_reasons if r.value not in skip_reasons]
            if not enforced:
                continue
            reason = "validity: " + ",".join(enforced)
            store.disqualify_from_horizon(model.model_id, horizon, VALIDITY_PHASE, reason)
        if result.is_fully_invalid:
            logger.warning(f"{model.model_id} failed validity on every horizon")
    return results
