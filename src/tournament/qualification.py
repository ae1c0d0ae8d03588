"""
Per-horizon qualification policies.

prevalence_margin keeps models whose mean log loss is within a margin of the
always-predict-the-base-rate baseline; top_percent keeps the best fraction of
the cohort by rank.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from .config import QualificationConfig
from .scoring import prevalence_log_loss

logger = logging.getLogger(__name__)


@dataclass
class HorizonQualificationResult:
    horizon: str
    qualified_models: List[str] = field(default_factory=list)
    disqualified_models: List[str] = field(default_factory=list)
    threshold: float = 0.0
    prevalence_ll: float = 0.0
    enforced: bool = True

    def to_dict(self) -> Dict:
        return {
            "horizon": self.horizon,
            "qualified_models": list(self.qualified_models),
            "disqualified_models": list(self.disqualified_models),
            "threshold": self.threshold,
            "prevalence_ll": self.prevalence_ll,
            "enforced": self.enforced,
        }


@dataclass
class QualificationResult:
    by_horizon: Dict[str, HorizonQualificationResult] = field(default_factory=dict)

    def qualified_by_model(self) -> Dict[str, List[str]]:
        """Invert by_horizon into {model_id: [horizons qualified on]}."""
        result: Dict[str, List[str]] = {}
        for horizon, hq in self.by_horizon.items():
            for model_id in hq.disqualified_models:
                result.setdefault(model_id, [])
            for model_id in hq.qualified_models:
                result.setdefault(model_id, []).append(horizon)
        return result

    def to_dict(self) -> Dict:
        return {h: r.to_dict() for h, r in self.by_horizon.items()}


def prevalence_baseline(labels: Sequence[bool]) -> float:
    """Prevalence-baseline log loss of a label set (0 when degenerate)."""
    count_true = sum(1 for y in labels if y)
    return prevalence_log_loss(count_true, len(labels) - count_true)


def qualify_models_for_horizon(
    mean_losses: Dict[str, float],
    horizon: str,
    prevalence_ll: float,
    config: QualificationConfig
) -> HorizonQualificationResult:
    """
    Apply the configured policy to one horizon's cohort.

    Args:
        mean_losses: {model_id: mean log loss on this horizon} for the cohort
        horizon: Horizon id
        prevalence_ll: Prevalence-baseline log loss of the horizon
        config: Policy and its parameters

    Returns:
        HorizonQualificationResult (model order follows mean_losses)
    """
    cohort = {m: ll for m, ll in mean_losses.items() if ll is not None and math.isfinite(ll)}
    result = HorizonQualificationResult(horizon=horizon, prevalence_ll=prevalence_ll)

    if config.mode == "prevalence_margin":
        result.threshold = prevalence_ll + config.margin
        for model_id, ll in cohort.items():
            if ll <= result.threshold:
                result.qualified_models.append(model_id)
            else:
                result.disqualified_models.append(model_id)
        return result

    if not cohort:
        result.threshold = prevalence_ll
        return result

    ranked = sorted(cohort.items(), key=lambda item: (item[1], item[0]))
    keep = math.ceil(len(ranked) * config.top_percent)
    kept = {model_id for model_id, _ in ranked[:keep]}
    result.threshold = ranked[keep - 1][1] if keep > 0 else prevalence_ll
    for model_id in cohort:
        if model_id in kept:
            result.qualified_models.append(model_id)
        else:
            result.disqualified_models.append(model_id)
    return result


def qualify_models(
    mean_losses_by_horizon: Dict[str, Dict[str, float]],
    labels_by_horizon: Dict[str, List[bool]],
    config: QualificationConfig
) -> QualificationResult:
    """
    Run qualification for every horizon.

    Args:
        mean_losses_by_horizon: {horizon: {model_id: mean log loss}}
        labels_by_horizon: {horizon: labels} used for the prevalence baseline
        config: Qualification policy

    Returns:
        QualificationResult
    """
    result = QualificationResult()
    for horizon, losses in mean_losses_by_horizon.items():
        baseline = prevalence_baseline(labels_by_horizon.get(horizon, []))
        result.by_horizon[horizon] = qualify_models_for_horizon(losses, horizon, baseline, config)
    return result
