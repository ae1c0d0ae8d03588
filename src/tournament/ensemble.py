"""
Online ensemble of tournament models.

Per horizon, keeps a rolling window of each model's recent log losses and
blends the current round's probabilities with weights proportional to
exp(-alpha * rolling mean loss). The blend is scored with the same
primitives as any single model.

Blending is split from recording so a round can be computed in full before
anything is committed.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional

import numpy as np

from .config import EnsembleConfig, ScoringConfig
from .scoring import (
    RANDOM_BASELINE_LOG_LOSS,
    brier_score,
    log_loss,
    stability_metrics,
)

logger = logging.getLogger(__name__)


class EnsembleError(Exception):
    """Raised when ensemble bookkeeping is used inconsistently."""
    pass


@dataclass
class EnsembleRoundResult:
    round_number: int
    horizon: str
    is_scoreable: bool
    probability: Optional[float] = None
    weights: Dict[str, float] = field(default_factory=dict)
    contributing_models: int = 0
    weight_entropy: float = 0.0
    label: Optional[bool] = None
    log_loss: Optional[float] = None
    brier: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "round_number": self.round_number,
            "horizon": self.horizon,
            "is_scoreable": self.is_scoreable,
            "probability": self.probability,
            "weights": dict(self.weights),
            "contributing_models": self.contributing_models,
            "weight_entropy": self.weight_entropy,
            "label": self.label,
            "log_loss": self.log_loss,
            "brier": self.brier,
        }


@dataclass
class EnsemblePerformance:
    horizon: str
    scored_rounds: int
    skipped_rounds: int
    mean_log_loss: Optional[float] = None
    mean_brier: Optional[float] = None
    best_window_log_loss: Optional[float] = None
    worst_window_log_loss: Optional[float] = None
    stability: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "horizon": self.horizon,
            "scored_rounds": self.scored_rounds,
            "skipped_rounds": self.skipped_rounds,
            "mean_log_loss": self.mean_log_loss,
            "mean_brier": self.mean_brier,
            "best_window_log_loss": self.best_window_log_loss,
            "worst_window_log_loss": self.worst_window_log_loss,
            "stability": self.stability,
        }


def normalized_weights(rolling_means: Dict[str, float], alpha: float) -> Dict[str, float]:
    """
    Softmax of -alpha * rolling mean, computed stably.

    Returns an empty dict for an empty input.
    """
    if not rolling_means:
        return {}
    ids = list(rolling_means)
    losses = np.array([rolling_means[m] for m in ids], dtype=float)
    logits = -alpha * losses
    logits -= logits.max()
    raw = np.exp(logits)
    raw /= raw.sum()
    return {m: float(w) for m, w in zip(ids, raw)}


def weight_entropy(weights: Dict[str, float]) -> float:
    """Shannon entropy (nats) of a weight distribution."""
    return -sum(w * math.log(w) for w in weights.values() if w > 0)


class OnlineEnsemble:
    """
    Rolling-window weighted ensemble over a fixed horizon set.

    Args:
        horizons: Horizon ids
        config: Window size, alpha and minimum contributing models
        scoring: Clamp epsilon for scoring the blend
    """

    def __init__(
        self,
        horizons: Iterable[str],
        config: Optional[EnsembleConfig] = None,
        scoring: Optional[ScoringConfig] = None
    ):
        self.config = config or EnsembleConfig()
        self.scoring = scoring or ScoringConfig()
        self.horizons = list(horizons)
        self._windows: Dict[str, Dict[str, Deque[float]]] = {h: {} for h in self.horizons}
        self._results: Dict[str, List[EnsembleRoundResult]] = {h: [] for h in self.horizons}

    def _check_horizon(self, horizon: str) -> None:
        if horizon not in self._windows:
            raise EnsembleError(f"Unknown horizon: {horizon}")

    def rolling_mean(self, model_id: str, horizon: str) -> float:
        """Mean of a model's window; the random baseline when it has no history."""
        self._check_horizon(horizon)
        window = self._windows[horizon].get(model_id)
        if not window:
            return RANDOM_BASELINE_LOG_LOSS
        return sum(window) / len(window)

    def blend(
        self,
        round_number: int,
        horizon: str,
        forecasts: Dict[str, Optional[float]],
        label: Optional[bool] = None
    ) -> EnsembleRoundResult:
        """
        Compute the ensemble forecast for one horizon without recording it.

        Args:
            round_number: Round being blended
            horizon: Horizon id
            forecasts: {model_id: probability or None if the forecast failed}
            label: Outcome, when known, to score the blend against

        Returns:
            EnsembleRoundResult; is_scoreable is False when fewer than
            min_models valid forecasts are available
        """
        self._check_horizon(horizon)
        valid = {m: p for m, p in forecasts.items() if p is not None}

        if len(valid) < self.config.min_models:
            logger.debug(
                f"Ensemble skipped for {horizon} round {round_number}: "
                f"{len(valid)} < {self.config.min_models} models"
            )
            return EnsembleRoundResult(
                round_number=round_number,
                horizon=horizon,
                is_scoreable=False,
                contributing_models=len(valid),
                label=label,
            )

        means = {m: self.rolling_mean(m, horizon) for m in valid}
        weights = normalized_weights(means, self.config.alpha)
        probability = sum(weights[m] * valid[m] for m in valid)
        probability = min(max(probability, 0.0), 1.0)

        result = EnsembleRoundResult(
            round_number=round_number,
            horizon=horizon,
            is_scoreable=True,
            probability=probability,
            weights=weights,
            contributing_models=len(valid),
            weight_entropy=weight_entropy(weights),
            label=label,
        )
        if label is not None:
            result.log_loss = log_loss(probability, label, self.scoring.epsilon)
            result.brier = brier_score(probability, label)
        return result

    def record(self, result: EnsembleRoundResult, model_losses: Dict[str, float]) -> None:
        """
        Commit a blended round and push each model's loss into its window.

        Args:
            result: Output of blend() for this round and horizon
            model_losses: {model_id: log loss this round}, worst case for
                failed forecasts
        """
        horizon = result.horizon
        self._check_horizon(horizon)
        history = self._results[horizon]
        if history and result.round_number <= history[-1].round_number:
            raise EnsembleError(
                f"Round {result.round_number} already recorded for {horizon}"
            )
        history.append(result)

        windows = self._windows[horizon]
        for model_id, loss in model_losses.items():
            if model_id not in windows:
                windows[model_id] = deque(maxlen=self.config.rolling_window_size)
            windows[model_id].append(loss)

    def current_weights(self, horizon: str, model_ids: Iterable[str]) -> Dict[str, float]:
        """Weights the given models would get on the next round."""
        means = {m: self.rolling_mean(m, horizon) for m in model_ids}
        return normalized_weights(means, self.config.alpha)

    def results(self, horizon: str) -> List[EnsembleRoundResult]:
        self._check_horizon(horizon)
        return list(self._results[horizon])

    def summarize(self, horizon: str) -> EnsemblePerformance:
        """Performance of the blend over every recorded round of a horizon."""
        results = self.results(horizon)
        scored = [r for r in results if r.is_scoreable and r.log_loss is not None]
        perf = EnsemblePerformance(
            horizon=horizon,
            scored_rounds=len(scored),
            skipped_rounds=len(results) - len(scored),
        )
        if not scored:
            return perf

        losses = [r.log_loss for r in scored]
        perf.mean_log_loss = sum(losses) / len(losses)
        perf.mean_brier = sum(r.brier for r in scored) / len(scored)
        stats = stability_metrics(losses, self.config.rolling_window_size)
        perf.best_window_log_loss = stats["best_window"]
        perf.worst_window_log_loss = stats["worst_window"]
        perf.stability = stats["variance"]
        return perf

    def summarize_all(self) -> Dict[str, EnsemblePerformance]:
        return {h: self.summarize(h) for h in self.horizons}
