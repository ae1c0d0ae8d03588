"""
Per-horizon leaderboard data.

Each entry summarises one model on one horizon: mean log loss, mean Brier,
Brier skill against the base rate, win rate, precision, expected calibration
error and rounds played. Entries are ordered by mean log loss; undefined (NaN) losses sort last.
"""

import math
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

from .config import ScoringConfig
from .scoring import (
    ScoringError,
    brier_skill_score,
    expected_calibration_error,
    mean_brier_score,
    prevalence,
)
from .state import ModelState, ModelStateStore


@dataclass
class LeaderboardEntry:
    model_id: str
    rank: int
    mean_log_loss: float
    mean_brier: float
    brier_skill: float
    win_rate: float
    precision: float
    calibration_error: float
    rounds_played: int
    is_eliminated: bool

    def to_dict(self) -> Dict:
        return asdict(self)


def win_rate(probabilities: Sequence[float], labels: Sequence[bool]) -> float:
    """Fraction of rounds where (p > 0.5) matched the label; NaN if empty."""
    if len(probabilities) != len(labels):
        raise ScoringError(
            f"Length mismatch: {len(probabilities)} probabilities vs {len(labels)} labels"
        )
    if len(probabilities) == 0:
        return float("nan")
    correct = sum(1 for p, y in zip(probabilities, labels) if (p > 0.5) == y)
    return correct / len(probabilities)


def precision(probabilities: Sequence[float], labels: Sequence[bool]) -> float:
    """TP / (TP + FP) over positive calls (p > 0.5); NaN if there are none."""
    if len(probabilities) != len(labels):
        raise ScoringError(
            f"Length mismatch: {len(probabilities)} probabilities vs {len(labels)} labels"
        )
    positives = [y for p, y in zip(probabilities, labels) if p > 0.5]
    if not positives:
        return float("nan")
    return sum(1 for y in positives if y) / len(positives)


def prevalence_brier(labels: Sequence[bool]) -> float:
    """Brier score of always predicting the observed base rate; NaN if empty."""
    rate = prevalence(labels)
    if rate is None:
        return float("nan")
    return mean_brier_score([rate] * len(labels), labels)


def _entry_for(model: ModelState, horizon: str, scoring: ScoringConfig) -> LeaderboardEntry:
    probs, labels = [], []
    for rs in model.round_scores:
        if horizon in rs.predictions:
            probs.append(rs.predictions[horizon])
            labels.append(rs.labels[horizon])
    mean_ll = model.mean_log_loss(horizon)
    mean_brier = mean_brier_score(probs, labels)
    return LeaderboardEntry(
        model_id=model.model_id,
        rank=0,
        mean_log_loss=float("nan") if mean_ll is None else mean_ll,
        mean_brier=mean_brier,
        brier_skill=brier_skill_score(mean_brier, prevalence_brier(labels)),
        win_rate=win_rate(probs, labels),
        precision=precision(probs, labels),
        calibration_error=expected_calibration_error(
            probs, labels,
            n_bins=scoring.calibration_bins,
            min_samples=scoring.min_samples_for_calibration,
        ),
        rounds_played=model.rounds_played,
        is_eliminated=model.is_eliminated,
    )


def _sort_key(entry: LeaderboardEntry):
    loss = entry.mean_log_loss
    return (math.isnan(loss), 0.0 if math.isnan(loss) else loss, entry.model_id)


def build_horizon_leaderboard(
    store: ModelStateStore,
    horizon: str,
    scoring: Optional[ScoringConfig] = None,
    include_eliminated: bool = True
) -> List[LeaderboardEntry]:
    """
    Leaderboard of every model on one horizon.

    Args:
        store: Model state store
        horizon: Horizon id
        scoring: Calibration bin and sample settings
        include_eliminated: Keep eliminated models in the table

    Returns:
        Entries ranked from 1, best first
    """
    scoring = scoring or ScoringConfig()
    models = store.all_models() if include_eliminated else store.active_models()
    entries = [_entry_for(m, horizon, scoring) for m in models]
    entries.sort(key=_sort_key)
    for i, entry in enumerate(entries):
        entry.rank = i + 1
    return entries


def build_leaderboards(
    store: ModelStateStore,
    scoring: Optional[ScoringConfig] = None
) -> Dict[str, List[LeaderboardEntry]]:
    return {h: build_horizon_leaderboard(store, h, scoring) for h in store.horizons}
