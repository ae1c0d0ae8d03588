"""
Tournament orchestrator.

Owns one ModelStateStore and one OnlineEnsemble for the lifetime of a
tournament. score_round() takes a fully collected round, computes every
score, ensemble blend and diagnostic first, and only then commits; a round
that fails validation leaves no trace. run_elimination() runs the phases
once and returns the final rankings, qualification, extension plan and
ensemble performance.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .config import TournamentConfig
from .diagnostics import (
    HorizonStats,
    RoundDiagnostic,
    append_diagnostics,
    build_round_diagnostic,
    compute_horizon_stats,
    time_to_resolution_ratio,
)
from .ensemble import EnsemblePerformance, EnsembleRoundResult, OnlineEnsemble
from .extension import (
    ExtensionPlan,
    HorizonRankabilityStatus,
    build_extension_plan,
    eligible_models_for_horizon,
    qualified_models_for_horizon,
    rankability_from_labels,
)
from .horizons import DEFAULT_HORIZONS, HorizonSpec, horizon_ids
from .leaderboard import LeaderboardEntry, build_leaderboards
from .phases import PhaseOutcome, RankedModel, run_all_phases
from .qualification import QualificationResult
from .records import (
    Forecast,
    ForecastRecord,
    LabelRecord,
    MissingForecast,
    RecordError,
    as_utc,
    parse_label_record,
    parse_prediction_record,
)
from .scoring import brier_score, safe_log_loss
from .state import ModelStateStore, RoundScore
from .validity import ModelValidityResult

logger = logging.getLogger(__name__)


class RoundError(Exception):
    """Raised when a round cannot be scored; nothing from it is kept."""
    pass


@dataclass
class RoundResult:
    round_number: int
    scores: Dict[str, RoundScore]
    diagnostics: List[RoundDiagnostic]
    ensemble: Dict[str, EnsembleRoundResult]
    dropped_predictions: List[str] = field(default_factory=list)


@dataclass
class TournamentResult:
    rankings: List[RankedModel]
    qualification: Optional[QualificationResult]
    extension_plan: Optional[ExtensionPlan]
    rankability: Dict[str, HorizonRankabilityStatus]
    validity: Dict[str, ModelValidityResult]
    phase_outcomes: List[PhaseOutcome]
    horizon_stats: Dict[str, HorizonStats]
    ensemble_performance: Dict[str, EnsemblePerformance]
    leaderboards: Dict[str, List[LeaderboardEntry]]
    models: Dict[str, Dict]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rankings": [r.to_dict() for r in self.rankings],
            "qualification": self.qualification.to_dict() if self.qualification else None,
            "extension_plan": self.extension_plan.to_dict() if self.extension_plan else None,
            "rankability": {h: s.to_dict() for h, s in self.rankability.items()},
            "validity": {m: v.to_dict() for m, v in self.validity.items()},
            "phases": [o.to_dict() for o in self.phase_outcomes],
            "horizon_stats": {h: s.to_dict() for h, s in self.horizon_stats.items()},
            "ensemble": {h: p.to_dict() for h, p in self.ensemble_performance.items()},
            "leaderboards": {
                h: [e.to_dict() for e in entries] for h, entries in self.leaderboards.items()
            },
            "models": self.models,
        }


PredictionInput = Union[Dict[str, Any], Forecast, MissingForecast]
LabelInput = Union[Dict[str, Any], LabelRecord]


class Tournament:
    """
    One calibration tournament over a fixed set of models and horizons.

    Args:
        model_ids: Models entered in the tournament
        horizons: Horizon set (defaults to DEFAULT_HORIZONS)
        config: Tunables (defaults to TournamentConfig())
        diagnostics_path: Optional JSONL file each round's diagnostics are
            appended to
    """

    def __init__(
        self,
        model_ids: Iterable[str],
        horizons: Optional[List[HorizonSpec]] = None,
        config: Optional[TournamentConfig] = None,
        diagnostics_path: Optional[Path] = None
    ):
        self.config = config or TournamentConfig()
        self.horizons = list(horizons or DEFAULT_HORIZONS)
        self.horizon_specs = {h.horizon_id: h for h in self.horizons}
        self.horizon_ids = horizon_ids(self.horizons)
        self.store = ModelStateStore(model_ids, self.horizon_ids)
        self.ensemble: Optional[OnlineEnsemble] = None
        if self.config.ensemble.enabled:
            self.ensemble = OnlineEnsemble(self.horizon_ids, self.config.ensemble, self.config.scoring)
        self.diagnostics_path = diagnostics_path
        self.labels: Dict[str, List[LabelRecord]] = {h: [] for h in self.horizon_ids}
        self.rounds: List[int] = []
        self.result: Optional[TournamentResult] = None

    # Boundary parsing

    def _parse_labels(self, labels: Iterable[LabelInput]) -> Dict[str, LabelRecord]:
        parsed: Dict[str, LabelRecord] = {}
        for raw in labels:
            if isinstance(raw, LabelRecord):
                record = raw
            else:
                try:
                    record = parse_label_record(raw, self.config.benign_label)
                except RecordError as e:
                    raise RoundError(str(e))
            if record.horizon not in self.horizon_specs:
                raise RoundError(f"Label for unknown horizon: {record.horizon}")
            if record.horizon in parsed:
                raise RoundError(f"Duplicate label for horizon {record.horizon}")
            parsed[record.horizon] = record

        missing = [h for h in self.horizon_ids if h not in parsed]
        if missing:
            raise RoundError(f"Missing labels for horizons: {missing}")
        return parsed

    def _parse_predictions(
        self,
        predictions: Iterable[PredictionInput]
    ) -> Tuple[Dict[Tuple[str, str], ForecastRecord], List[str]]:
        parsed: Dict[Tuple[str, str], ForecastRecord] = {}
        dropped: List[str] = []
        for raw in predictions:
            if isinstance(raw, (Forecast, MissingForecast)):
                record = raw
            else:
                try:
                    record = parse_prediction_record(raw)
                except RecordError as e:
                    logger.warning(f"Dropping unattributable prediction: {e}")
                    dropped.append(str(e))
                    continue

            key = (record.model_id, record.horizon)
            if record.model_id not in self.store:
                logger.warning(f"Dropping prediction from unknown model {record.model_id}")
                dropped.append(f"unknown model {record.model_id}")
            elif record.horizon not in self.horizon_specs:
                logger.warning(f"Dropping prediction for unknown horizon {record.horizon}")
                dropped.append(f"unknown horizon {record.horizon}")
            elif self.store.is_eliminated(record.model_id):
                logger.warning(f"Dropping prediction from eliminated model {record.model_id}")
                dropped.append(f"eliminated model {record.model_id}")
            elif key in parsed:
                logger.warning(f"Duplicate prediction for {key}; keeping the first")
                dropped.append(f"duplicate {record.model_id}/{record.horizon}")
            else:
                parsed[key] = record
        return parsed, dropped

    # Rounds

    def score_round(
        self,
        round_number: int,
        predictions: Iterable[PredictionInput],
        labels: Iterable[LabelInput],
        as_of: Optional[datetime] = None
    ) -> RoundResult:
        """
        Score one fully collected round for every active model.

        Missing or invalid forecasts score the worst-case loss. The round is
        committed only after everything has been computed.

        Args:
            round_number: Strictly increasing round number
            predictions: Prediction dicts or parsed Forecast/MissingForecast
            labels: One label per horizon (dicts or LabelRecord)
            as_of: Time the round's forecasts were made (naive means UTC)

        Returns:
            RoundResult

        Raises:
            RoundError: If the tournament is finished, the round number does
                not increase, or labels are incomplete or malformed
        """
        if self.store.sealed:
            raise RoundError("Tournament already finished")
        if self.rounds and round_number <= self.rounds[-1]:
            raise RoundError(f"Round {round_number} does not follow round {self.rounds[-1]}")

        label_records = self._parse_labels(labels)
        forecasts, dropped = self._parse_predictions(predictions)
        if as_of is not None:
            as_of = as_utc(as_of)
        timestamp = as_of or datetime.now(timezone.utc)
        scoring = self.config.scoring

        scores: Dict[str, RoundScore] = {}
        diagnostics: List[RoundDiagnostic] = []
        blend_inputs: Dict[str, Dict[str, Optional[float]]] = {h: {} for h in self.horizon_ids}
        model_losses: Dict[str, Dict[str, float]] = {h: {} for h in self.horizon_ids}

        for model in self.store.active_models():
            model_id = model.model_id
            by_horizon: Dict[str, ForecastRecord] = {}
            losses: Dict[str, float] = {}
            briers: Dict[str, Optional[float]] = {}
            probs: Dict[str, float] = {}
            ratios: Dict[str, Optional[float]] = {}
            failed = set()

            for horizon in self.horizon_ids:
                label = label_records[horizon]
                record = forecasts.get((model_id, horizon))
                if record is None:
                    record = MissingForecast(model_id, horizon, "no_prediction")
                by_horizon[horizon] = record

                probability = record.probability if isinstance(record, Forecast) else None
                losses[horizon] = safe_log_loss(
                    probability, label.label, scoring.epsilon, scoring.worst_case_probability
                )
                if isinstance(record, Forecast):
                    briers[horizon] = brier_score(record.probability, label.label)
                    probs[horizon] = record.probability
                    blend_inputs[horizon][model_id] = record.probability
                else:
                    briers[horizon] = None
                    failed.add(horizon)
                    blend_inputs[horizon][model_id] = None
                model_losses[horizon][model_id] = losses[horizon]

                ratio = None
                if as_of is not None:
                    ratio = time_to_resolution_ratio(
                        as_of, label.first_resolution_at, self.horizon_specs[horizon]
                    )
                ratios[horizon] = ratio

            scores[model_id] = RoundScore(
                round_number=round_number,
                log_loss=sum(losses.values()) / len(losses),
                log_loss_by_horizon=losses,
                predictions=probs,
                labels={h: lr.label for h, lr in label_records.items()},
                time_to_resolution_ratio={h: r for h, r in ratios.items() if r is not None},
                failed_horizons=frozenset(failed),
                data_missing_horizons=frozenset(
                    h for h, lr in label_records.items() if lr.data_missing
                ),
            )
            diagnostics.append(build_round_diagnostic(
                round_number, timestamp, model_id, by_horizon, label_records,
                losses, briers, ratios, self.horizon_specs,
            ))

        blends: Dict[str, EnsembleRoundResult] = {}
        if self.ensemble is not None:
            for horizon in self.horizon_ids:
                blends[horizon] = self.ensemble.blend(
                    round_number, horizon, blend_inputs[horizon], label_records[horizon].label
                )

        # Commit
        for model_id, score in scores.items():
            self.store.add_round_score(model_id, score)
        if self.ensemble is not None:
            for horizon, blend in blends.items():
                self.ensemble.record(blend, model_losses[horizon])
        for horizon, lr in label_records.items():
            self.labels[horizon].append(lr)
        self.rounds.append(round_number)

        if self.diagnostics_path is not None:
            append_diagnostics(self.diagnostics_path, diagnostics)

        logger.debug(
            f"Scored round {round_number}: {len(scores)} models, "
            f"{len(dropped)} predictions dropped"
        )
        return RoundResult(round_number, scores, diagnostics, blends, dropped)

    # Final evaluation

    def horizon_stats(self) -> Dict[str, HorizonStats]:
        return {h: compute_horizon_stats(h, self.labels[h]) for h in self.horizon_ids}

    def rankability(self) -> Dict[str, HorizonRankabilityStatus]:
        """Rankability of each horizon from its resolved (non-missing) labels."""
        return {
            h: rankability_from_labels(
                h, [lr.label for lr in self.labels[h] if not lr.data_missing],
                self.config.rankability,
            )
            for h in self.horizon_ids
        }

    def run_elimination(self) -> TournamentResult:
        """
        Run validity gates and phases 0-3 and assemble the final result.

        Runs once; later calls return the same result.
        """
        if self.result is not None:
            return self.result

        phase_result = run_all_phases(self.store, self.config)
        rankability = self.rankability()

        plan = None
        if self.config.extension.enabled:
            plan = build_extension_plan(
                rankability,
                {h: qualified_models_for_horizon(self.store, h) for h in self.horizon_ids},
                {h: eligible_models_for_horizon(self.store, h) for h in self.horizon_ids},
                self.config.extension,
            )

        performance = self.ensemble.summarize_all() if self.ensemble is not None else {}

        self.result = TournamentResult(
            rankings=phase_result.rankings,
            qualification=phase_result.qualification,
            extension_plan=plan,
            rankability=rankability,
            validity=phase_result.validity,
            phase_outcomes=phase_result.outcomes,
            horizon_stats=self.horizon_stats(),
            ensemble_performance=performance,
            leaderboards=build_leaderboards(self.store, self.config.scoring),
            models=self.store.snapshot(),
        )
        logger.info(
            f"Tournament finished after {len(self.rounds)} rounds: "
            f"{len(self.result.rankings)} ranked models"
        )
        return self.result
