"""
Four-phase elimination runner.

Phase 0 (sanity) disqualifies degenerate horizons and eliminates models that
are degenerate everywhere. Phase 1 (percentile qualification) drops models
from horizons where they sit in the bottom of the cohort. Phase 2
(stability/regret) eliminates models whose worst stretch is far worse than
the cohort's. Phase 3 ranks the survivors.

Every phase reads the store, decides all of its changes first and only then
applies them, so the order models are visited in never matters. A phase's
cohort is the set of models and horizons that entered it: models it removed
itself stay in, models removed by an earlier phase never do. Replaying a
phase on its own output therefore makes the same decisions again, and
eliminations stay final.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import PhaseConfig, QualificationConfig, ScoringConfig, TournamentConfig
from .qualification import QualificationResult, qualify_models
from .scoring import median, percentile_ranks, stability_metrics
from .state import ModelState, ModelStateStore, StateInvariantError
from .validity import ModelValidityResult, apply_validity_gates, check_horizon_validity, horizon_series

logger = logging.getLogger(__name__)

# Rolling-window variances at or below this count as flat
VARIANCE_TOLERANCE = 1e-12

SANITY_PREFIX = "sanity: "


@dataclass
class PhaseOutcome:
    """What one phase did."""
    phase: int
    eliminated: Dict[str, str] = field(default_factory=dict)
    disqualified: Dict[str, Dict[str, str]] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    def add_disqualification(self, model_id: str, horizon: str, reason: str) -> None:
        self.disqualified.setdefault(model_id, {})[horizon] = reason

    def to_dict(self) -> Dict:
        return {
            "phase": self.phase,
            "eliminated": dict(self.eliminated),
            "disqualified": {m: dict(h) for m, h in self.disqualified.items()},
            "skipped": list(self.skipped),
        }


@dataclass
class Phase1Outcome(PhaseOutcome):
    percentiles: Dict[str, Dict[str, float]] = field(default_factory=dict)
    qualification: QualificationResult = field(default_factory=QualificationResult)

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data["percentiles"] = {m: dict(p) for m, p in self.percentiles.items()}
        data["qualification"] = self.qualification.to_dict()
        data["qualified_by_model"] = self.qualification.qualified_by_model()
        return data


@dataclass
class Phase2Outcome(PhaseOutcome):
    regret: Dict[str, Dict[str, float]] = field(default_factory=dict)
    variance: Dict[str, Dict[str, float]] = field(default_factory=dict)


@dataclass
class RankedModel:
    rank: int
    model_id: str
    composite_score: float
    mean_log_loss_by_horizon: Dict[str, float]
    qualified_horizons: List[str]

    def to_dict(self) -> Dict:
        return {
            "rank": self.rank,
            "model_id": self.model_id,
            "composite_score": self.composite_score,
            "mean_log_loss_by_horizon": dict(self.mean_log_loss_by_horizon),
            "qualified_horizons": list(self.qualified_horizons),
        }


@dataclass
class PhaseRunResult:
    validity: Dict[str, ModelValidityResult]
    outcomes: List[PhaseOutcome]
    rankings: List[RankedModel]

    @property
    def qualification(self) -> Optional[QualificationResult]:
        for outcome in self.outcomes:
            if isinstance(outcome, Phase1Outcome):
                return outcome.qualification
        return None


def entered_phase(model: ModelState, phase: int) -> bool:
    """True if the model was still in the tournament when the phase began."""
    return model.eliminated_in_phase is None or model.eliminated_in_phase >= phase


def entered_on_horizon(model: ModelState, horizon: str, phase: int) -> bool:
    """True if the model was still qualified on the horizon when the phase began."""
    if horizon in model.qualified_horizons:
        return True
    dq = model.disqualified_horizons.get(horizon)
    if dq is None or dq.phase < phase:
        return False
    # Validity gates stamp phase 0 too but run before the sanity checks.
    return dq.phase > 0 or dq.reason.startswith(SANITY_PREFIX)


def _qualified_mean_losses(model: ModelState, horizons: List[str]) -> Dict[str, float]:
    result = {}
    for horizon in horizons:
        if horizon not in model.qualified_horizons:
            continue
        ll = model.mean_log_loss(horizon)
        if ll is not None:
            result[horizon] = ll
    return result


def run_phase0(store: ModelStateStore, config: TournamentConfig) -> PhaseOutcome:
    """
    Sanity phase.

    Models with fewer than phase0_min_rounds rounds are skipped. For the rest,
    each horizon the model entered the phase on is checked for degenerate
    behaviour (the configured subset of validity reasons) and a mean log loss
    above the sanity ceiling. Failing horizons are disqualified; a model
    failing every horizon it was checked on is eliminated.
    """
    phases = config.phases
    outcome = PhaseOutcome(phase=0)
    failures: Dict[str, Dict[str, str]] = {}

    for model in store.all_models():
        if not entered_phase(model, 0):
            continue
        if model.rounds_played < phases.phase0_min_rounds:
            outcome.skipped.append(model.model_id)
            continue

        checked = [h for h in store.horizons if entered_on_horizon(model, h, 0)]
        failing = {}
        for horizon in checked:
            preds, labels, failed, total = horizon_series(model, horizon)
            hv = check_horizon_validity(preds, labels, failed, total, horizon, config.validity)
            reasons = [r.value for r in hv.failure_reasons if r.value in phases.phase0_degenerate_reasons]
            mean_ll = model.mean_log_loss(horizon)
            if mean_ll is not None and mean_ll > phases.phase0_max_mean_log_loss:
                reasons.append(f"mean_log_loss {mean_ll:.3f} > {phases.phase0_max_mean_log_loss}")
            if reasons:
                failing[horizon] = SANITY_PREFIX + ",".join(reasons)

        if failing and len(failing) == len(checked):
            failures[model.model_id] = failing
        elif failing:
            for horizon, reason in failing.items():
                outcome.add_disqualification(model.model_id, horizon, reason)

    for model_id, failing in failures.items():
        reason = "Degenerate on all horizons: " + "; ".join(
            f"{h} ({r})" for h, r in failing.items()
        )
        if store.get(model_id).is_active:
            store.eliminate_model(model_id, 0, reason)
        outcome.eliminated[model_id] = reason

    for model_id, by_horizon in outcome.disqualified.items():
        for horizon, reason in by_horizon.items():
            store.disqualify_from_horizon(model_id, horizon, 0, reason)

    return outcome


def run_phase1(
    store: ModelStateStore,
    phases: PhaseConfig,
    qualification: QualificationConfig,
    scoring: Optional[ScoringConfig] = None
) -> Phase1Outcome:
    """
    Percentile qualification.

    For each horizon the cohort is the models that entered the phase
    qualified on it. A model below phase1_min_percentile is disqualified
    from that horizon.
    The qualification policy runs on the same cohort; it is enforced only
    when the horizon's resolved labels contain both outcomes, otherwise its
    result is reported but not applied.

    Returns:
        Phase1Outcome with percentiles and per-horizon QualificationResult
    """
    scoring = scoring or ScoringConfig()
    outcome = Phase1Outcome(phase=1)
    labels_by_horizon = store.labels_by_horizon(exclude_missing=True)

    cohorts: Dict[str, Dict[str, float]] = {}
    for horizon in store.horizons:
        cohort = {}
        for model in store.all_models():
            if not (entered_phase(model, 1) and entered_on_horizon(model, horizon, 1)):
                continue
            ll = model.mean_log_loss(horizon)
            if ll is not None:
                cohort[model.model_id] = ll
        cohorts[horizon] = cohort

    mean_losses: Dict[str, Dict[str, float]] = {}
    for horizon, cohort in cohorts.items():
        for model_id, ll in cohort.items():
            mean_losses.setdefault(model_id, {})[horizon] = ll

    outcome.percentiles = percentile_ranks(
        mean_losses,
        store.horizons,
        min_cohort=scoring.min_cohort_for_percentile,
        neutral=scoring.neutral_percentile,
    )

    outcome.qualification = qualify_models(cohorts, labels_by_horizon, qualification)

    for horizon, cohort in cohorts.items():
        for model_id in cohort:
            pct = outcome.percentiles[model_id][horizon]
            if pct < phases.phase1_min_percentile:
                outcome.add_disqualification(
                    model_id, horizon,
                    f"percentile {pct:.1f} < {phases.phase1_min_percentile}"
                )

        labels = labels_by_horizon.get(horizon, [])
        hq = outcome.qualification.by_horizon[horizon]
        hq.enforced = any(labels) and not all(labels)
        if hq.enforced:
            for model_id in hq.disqualified_models:
                if horizon not in outcome.disqualified.get(model_id, {}):
                    outcome.add_disqualification(
                        model_id, horizon,
                        f"{qualification.mode}: mean log loss {cohort[model_id]:.3f} "
                        f"above threshold {hq.threshold:.3f}"
                    )

    for model_id, by_horizon in outcome.disqualified.items():
        for horizon, reason in by_horizon.items():
            store.disqualify_from_horizon(model_id, horizon, 1, reason)
        if store.get(model_id).eliminated_in_phase == 1:
            outcome.eliminated[model_id] = "no_qualified_horizons"

    return outcome


def run_phase2(store: ModelStateStore, phases: PhaseConfig) -> Phase2Outcome:
    """
    Stability and regret phase.

    Requires phase2_min_rounds rounds. Per horizon, regret is a model's worst
    rolling-window mean loss divided by the cohort median of worst windows
    (1.0 when that median is 0). Models with regret above the threshold on
    enough horizons, or with rolling-window variance above a multiple of the
    cohort median on enough horizons, are eliminated.
    """
    outcome = Phase2Outcome(phase=2)
    eligible = []
    for model in store.all_models():
        if not entered_phase(model, 2):
            continue
        if model.rounds_played < phases.phase2_min_rounds:
            outcome.skipped.append(model.model_id)
        else:
            eligible.append(model)
    eligible_ids = {m.model_id for m in eligible}

    worst: Dict[str, Dict[str, float]] = {}
    variance: Dict[str, Dict[str, float]] = {}
    for horizon in store.horizons:
        for model in eligible:
            if not entered_on_horizon(model, horizon, 2):
                continue
            stats = stability_metrics(model.losses_for_horizon(horizon), phases.phase2_window)
            if stats["worst_window"] is None:
                continue
            worst.setdefault(horizon, {})[model.model_id] = stats["worst_window"]
            variance.setdefault(horizon, {})[model.model_id] = stats["variance"]

    high_regret: Dict[str, List[str]] = {m: [] for m in eligible_ids}
    unstable: Dict[str, List[str]] = {m: [] for m in eligible_ids}
    for horizon, by_model in worst.items():
        median_worst = median(list(by_model.values()))
        median_var = median(list(variance[horizon].values()))
        for model_id, w in by_model.items():
            regret = 1.0 if median_worst == 0 else w / median_worst
            outcome.regret.setdefault(model_id, {})[horizon] = regret
            outcome.variance.setdefault(model_id, {})[horizon] = variance[horizon][model_id]
            if regret > phases.phase2_regret_threshold:
                high_regret[model_id].append(horizon)
            var = variance[horizon][model_id]
            if var > VARIANCE_TOLERANCE and var > phases.phase2_instability_multiple * median_var:
                unstable[model_id].append(horizon)

    for model in eligible:
        model_id = model.model_id
        reason = None
        if len(high_regret[model_id]) >= phases.phase2_min_regret_horizons:
            reason = f"High regret on {', '.join(high_regret[model_id])}"
        elif len(unstable[model_id]) >= phases.phase2_min_unstable_horizons:
            reason = f"Unstable on {', '.join(unstable[model_id])}"
        if reason:
            outcome.eliminated[model_id] = reason

    for model_id, reason in outcome.eliminated.items():
        if store.get(model_id).is_active:
            store.eliminate_model(model_id, 2, reason)

    return outcome


def run_phase3(store: ModelStateStore, phases: PhaseConfig) -> List[RankedModel]:
    """
    Composite ranking of the surviving models.

    The composite is the weighted mean of per-horizon mean log loss over the
    model's qualified horizons. Lower is better; ties break on model id.

    Returns:
        At most phase3_arena_size RankedModel entries, best first
    """
    scored = []
    for model in store.active_models():
        by_horizon = _qualified_mean_losses(model, store.horizons)
        total_weight = sum(phases.weight_for(h) for h in by_horizon)
        if not by_horizon or total_weight <= 0:
            continue
        composite = sum(phases.weight_for(h) * ll for h, ll in by_horizon.items()) / total_weight
        scored.append((composite, model.model_id, by_horizon))

    scored.sort(key=lambda item: (item[0], item[1]))
    rankings = []
    for i, (composite, model_id, by_horizon) in enumerate(scored[:phases.phase3_arena_size]):
        rankings.append(RankedModel(
            rank=i + 1,
            model_id=model_id,
            composite_score=composite,
            mean_log_loss_by_horizon=by_horizon,
            qualified_horizons=sorted(by_horizon),
        ))
    return rankings


def run_all_phases(store: ModelStateStore, config: TournamentConfig) -> PhaseRunResult:
    """
    Run validity gates and phases 0 through 3, then seal the store.

    The gates only enforce the failures phase 0 does not check, so a
    degenerate model is eliminated by phase 0 with the reasons spelled out.

    Raises:
        StateInvariantError: If the store has already left phase 0
    """
    if store.current_phase != 0:
        raise StateInvariantError(
            f"Phases already run; store is at phase {store.current_phase}"
        )

    validity = apply_validity_gates(
        store, config.validity,
        min_rounds=config.phases.phase0_min_rounds,
        skip_reasons=config.phases.phase0_degenerate_reasons,
    )
    outcomes: List[PhaseOutcome] = [run_phase0(store, config)]

    store.advance_phase()
    outcomes.append(run_phase1(store, config.phases, config.qualification, config.scoring))

    store.advance_phase()
    outcomes.append(run_phase2(store, config.phases))

    store.advance_phase()
    rankings = run_phase3(store, config.phases)
    store.seal()

    for outcome in outcomes:
        logger.info(
            f"Phase {outcome.phase}: {len(outcome.eliminated)} eliminated, "
            f"{len(outcome.disqualified)} with disqualified horizons, "
            f"{len(outcome.skipped)} skipped"
        )
    return PhaseRunResult(validity=validity, outcomes=outcomes, rankings=rankings)
