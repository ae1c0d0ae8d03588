"""
Rankability check and extension trigger.

A horizon is extended by extra rounds when it is rankable (enough rounds and
enough examples of both outcomes) and more models qualified on it than the
threshold. Extra rounds are played either by the qualified cohort or by the
wider eligible cohort: every model that passed sanity on the horizon.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from .config import ExtensionConfig, RankabilityConfig
from .state import ModelStateStore

logger = logging.getLogger(__name__)


@dataclass
class HorizonRankabilityStatus:
    horizon: str
    is_rankable: bool
    effective_rounds: int
    minority_count: int
    prevalence: float
    reason: str = ""

    def to_dict(self) -> Dict:
        return {
            "horizon": self.horizon,
            "is_rankable": self.is_rankable,
            "effective_rounds": self.effective_rounds,
            "minority_count": self.minority_count,
            "prevalence": self.prevalence,
            "reason": self.reason,
        }


@dataclass
class ExtensionDecision:
    horizon: str
    should_extend: bool
    reason: str
    qualified_count: int
    eligible_count: int
    models_to_include: List[str] = field(default_factory=list)
    extra_rounds: int = 0

    def to_dict(self) -> Dict:
        return {
            "horizon": self.horizon,
            "should_extend": self.should_extend,
            "reason": self.reason,
            "qualified_count": self.qualified_count,
            "eligible_count": self.eligible_count,
            "models_to_include": list(self.models_to_include),
            "extra_rounds": self.extra_rounds,
        }


@dataclass
class ExtensionPlan:
    by_horizon: Dict[str, ExtensionDecision] = field(default_factory=dict)
    any_extension_triggered: bool = False
    total_extra_rounds: int = 0
    base_rounds: int = 0

    def to_dict(self) -> Dict:
        return {
            "by_horizon": {h: d.to_dict() for h, d in self.by_horizon.items()},
            "any_extension_triggered": self.any_extension_triggered,
            "total_extra_rounds": self.total_extra_rounds,
            "base_rounds": self.base_rounds,
        }


def check_horizon_rankability(
    horizon: str,
    effective_rounds: int,
    true_count: int,
    false_count: int,
    config: RankabilityConfig
) -> HorizonRankabilityStatus:
    """
    Decide whether a horizon has enough signal to rank models on.

    Args:
        horizon: Horizon id
        effective_rounds: Rounds with a resolved (non-missing) label
        true_count: Resolved labels that were true
        false_count: Resolved labels that were false
        config: Rankability thresholds

    Returns:
        HorizonRankabilityStatus; reason names the first unmet condition
    """
    total = true_count + false_count
    minority = min(true_count, false_count)
    prevalence = true_count / total if total > 0 else 0.0

    reason = ""
    if effective_rounds < config.min_effective_rounds:
        reason = f"effective rounds {effective_rounds} < {config.min_effective_rounds}"
    elif minority < config.min_minority:
        reason = f"minority count {minority} < {config.min_minority}"
    elif not config.min_prevalence <= prevalence <= config.max_prevalence:
        reason = (
            f"prevalence {prevalence:.3f} outside "
            f"[{config.min_prevalence}, {config.max_prevalence}]"
        )

    return HorizonRankabilityStatus(
        horizon=horizon,
        is_rankable=not reason,
        effective_rounds=effective_rounds,
        minority_count=minority,
        prevalence=prevalence,
        reason=reason,
    )


def rankability_from_labels(
    horizon: str,
    labels: Sequence[bool],
    config: RankabilityConfig
) -> HorizonRankabilityStatus:
    true_count = sum(1 for y in labels if y)
    return check_horizon_rankability(
        horizon, len(labels), true_count, len(labels) - true_count, config
    )


def decide_extension(
    rankability: HorizonRankabilityStatus,
    qualified_models: List[str],
    eligible_models: List[str],
    config: ExtensionConfig
) -> ExtensionDecision:
    """Extend iff rankable and the qualified count exceeds n_threshold."""
    horizon = rankability.horizon
    qualified_count = len(qualified_models)
    eligible_count = len(eligible_models)

    if not rankability.is_rankable:
        return ExtensionDecision(
            horizon, False,
            f"Horizon not rankable ({rankability.reason})",
            qualified_count, eligible_count,
        )

    if qualified_count <= config.n_threshold:
        return ExtensionDecision(
            horizon, False,
            f"Qualified count ({qualified_count}) <= threshold ({config.n_threshold})",
            qualified_count, eligible_count,
        )

    models = qualified_models if config.include_models == "qualified" else eligible_models
    return ExtensionDecision(
        horizon, True,
        f"Rankable with {qualified_count} qualified models > threshold ({config.n_threshold})",
        qualified_count, eligible_count,
        models_to_include=list(models),
        extra_rounds=config.n_ext,
    )


def build_extension_plan(
    rankability_by_horizon: Dict[str, HorizonRankabilityStatus],
    qualified_by_horizon: Dict[str, List[str]],
    eligible_by_horizon: Dict[str, List[str]],
    config: ExtensionConfig
) -> ExtensionPlan:
    """
    Aggregate per-horizon extension decisions.

    total_extra_rounds sums extra_rounds over the extended horizons.
    """
    plan = ExtensionPlan(base_rounds=config.n_base)
    for horizon, status in rankability_by_horizon.items():
        decision = decide_extension(
            status,
            qualified_by_horizon.get(horizon, []),
            eligible_by_horizon.get(horizon, []),
            config,
        )
        plan.by_horizon[horizon] = decision
        if decision.should_extend:
            plan.any_extension_triggered = True
            plan.total_extra_rounds += decision.extra_rounds
            logger.info(f"Extending {horizon} by {decision.extra_rounds} rounds: {decision.reason}")
    return plan


def eligible_models_for_horizon(store: ModelStateStore, horizon: str) -> List[str]:
    """
    Models that passed sanity on a horizon.

    Excludes models eliminated in phase 0 and models disqualified from the
    horizon in phase 0; later-phase disqualifications stay eligible.
    """
    eligible = []
    for model in store.all_models():
        if model.eliminated_in_phase == 0:
            continue
        dq = model.disqualified_horizons.get(horizon)
        if dq is not None and dq.phase == 0:
            continue
        eligible.append(model.model_id)
    return eligible


def qualified_models_for_horizon(store: ModelStateStore, horizon: str) -> List[str]:
    return [m.model_id for m in store.models_for_horizon(horizon)]
