"""
Model state store.

Single source of truth for every model's lifecycle during one tournament:
activity, elimination stamp, per-horizon qualification and the append-only
list of per-round scores. One store is constructed per tournament and passed
explicitly to every phase; it is mutated only through the methods below.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

MAX_PHASE = 3


class StateInvariantError(Exception):
    """Raised when a store mutation would break a lifecycle invariant."""
    pass


@dataclass(frozen=True)
class RoundScore:
    """
    Immutable score record of one model in one round.

    predictions only holds horizons with a valid probability; horizons whose
    prediction was missing or invalid are listed in failed_horizons and
    carry the worst-case loss in log_loss_by_horizon.
    time_to_resolution_ratio only holds horizons that actually resolved.
    """
    round_number: int
    log_loss: float
    log_loss_by_horizon: Dict[str, float]
    predictions: Dict[str, float]
    labels: Dict[str, bool]
    time_to_resolution_ratio: Dict[str, float] = field(default_factory=dict)
    failed_horizons: FrozenSet[str] = frozenset()
    data_missing_horizons: FrozenSet[str] = frozenset()


@dataclass
class HorizonDisqualification:
    phase: int
    reason: str


@dataclass
class ModelState:
    """Lifecycle state of one model."""
    model_id: str
    is_active: bool = True
    eliminated_in_phase: Optional[int] = None
    elimination_reason: Optional[str] = None
    qualified_horizons: Set[str] = field(default_factory=set)
    disqualified_horizons: Dict[str, HorizonDisqualification] = field(default_factory=dict)
    round_scores: List[RoundScore] = field(default_factory=list)

    @property
    def is_eliminated(self) -> bool:
        """Eliminated explicitly, or left without any qualified horizon."""
        return not self.is_active or not self.qualified_horizons

    @property
    def rounds_played(self) -> int:
        return len(self.round_scores)

    def losses_for_horizon(self, horizon: str) -> List[float]:
        """Per-round log losses on a horizon, in round order."""
        return [
            rs.log_loss_by_horizon[horizon]
            for rs in self.round_scores
            if horizon in rs.log_loss_by_horizon
        ]

    def mean_log_loss(self, horizon: str) -> Optional[float]:
        losses = self.losses_for_horizon(horizon)
        if not losses:
            return None
        return sum(losses) / len(losses)

    def to_dict(self) -> Dict:
        return {
            "model_id": self.model_id,
            "is_active": self.is_active,
            "is_eliminated": self.is_eliminated,
            "eliminated_in_phase": self.eliminated_in_phase,
            "elimination_reason": self.elimination_reason,
            "qualified_horizons": sorted(self.qualified_horizons),
            "disqualified_horizons": {
                h: {"phase": d.phase, "reason": d.reason}
                for h, d in sorted(self.disqualified_horizons.items())
            },
            "rounds_played": self.rounds_played,
        }


class ModelStateStore:
    """
    Owns the ModelState of every model in one tournament.

    Args:
        model_ids: Models entered in the tournament
        horizons: Horizon ids every model is evaluated on
    """

    def __init__(self, model_ids: Iterable[str], horizons: Iterable[str]):
        self.horizons: List[str] = list(horizons)
        if not self.horizons:
            raise StateInvariantError("A tournament needs at least one horizon")
        self._models: Dict[str, ModelState] = {}
        for model_id in model_ids:
            if model_id in self._models:
                raise StateInvariantError(f"Duplicate model id: {model_id}")
            self._models[model_id] = ModelState(
                model_id=model_id, qualified_horizons=set(self.horizons)
            )
        self.current_phase = 0
        self.sealed = False

    def _check_mutable(self) -> None:
        if self.sealed:
            raise StateInvariantError("Store is sealed; tournament already finished")

    def get(self, model_id: str) -> ModelState:
        try:
            return self._models[model_id]
        except KeyError:
            raise StateInvariantError(f"Unknown model: {model_id}")

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)

    @property
    def model_ids(self) -> List[str]:
        return list(self._models)

    def all_models(self) -> List[ModelState]:
        return list(self._models.values())

    def active_models(self) -> List[ModelState]:
        """Models that are neither eliminated nor left without horizons."""
        return [m for m in self._models.values() if not m.is_eliminated]

    def models_for_horizon(self, horizon: str) -> List[ModelState]:
        """Active models still qualified on a horizon."""
        return [m for m in self.active_models() if horizon in m.qualified_horizons]

    def is_eliminated(self, model_id: str) -> bool:
        return self.get(model_id).is_eliminated

    # Mutations

    def add_round_score(self, model_id: str, score: RoundScore) -> None:
        """
        Append a round score to a model's history.

        Raises:
            StateInvariantError: If the model is eliminated, the round number
                does not increase, or the store is sealed
        """
        self._check_mutable()
        model = self.get(model_id)
        if model.is_eliminated:
            raise StateInvariantError(f"Cannot score eliminated model {model_id}")
        if model.round_scores and score.round_number <= model.round_scores[-1].round_number:
            raise StateInvariantError(
                f"Round {score.round_number} for {model_id} does not follow "
                f"round {model.round_scores[-1].round_number}"
            )
        if not math.isfinite(score.log_loss):
            raise StateInvariantError(f"Non-finite round loss for {model_id}")
        model.round_scores.append(score)

    def eliminate_model(self, model_id: str, phase: int, reason: str) -> None:
        """
        Mark a model inactive with a phase stamp.

        Raises:
            StateInvariantError: If the model was already eliminated
        """
        self._check_mutable()
        model = self.get(model_id)
        if not model.is_active:
            raise StateInvariantError(
                f"{model_id} already eliminated in phase {model.eliminated_in_phase}"
            )
        if not 0 <= phase <= MAX_PHASE:
            raise StateInvariantError(f"Invalid phase {phase}")
        model.is_active = False
        model.eliminated_in_phase = phase
        model.elimination_reason = reason
        logger.info(f"Eliminated {model_id} in phase {phase}: {reason}")

    def disqualify_from_horizon(self, model_id: str, horizon: str, phase: int, reason: str) -> None:
        """
        Remove one horizon from a model's qualified set.

        A model left with no qualified horizons is treated as eliminated,
        stamped with this phase.
        """
        self._check_mutable()
        model = self.get(model_id)
        if horizon not in self.horizons:
            raise StateInvariantError(f"Unknown horizon: {horizon}")
        if horizon not in model.qualified_horizons:
            return
        model.qualified_horizons.discard(horizon)
        model.disqualified_horizons[horizon] = HorizonDisqualification(phase, reason)
        logger.info(f"Disqualified {model_id} from {horizon} in phase {phase}: {reason}")

        if not model.qualified_horizons and model.is_active:
            model.is_active = False
            model.eliminated_in_phase = phase
            model.elimination_reason = "no_qualified_horizons"
            logger.info(f"Eliminated {model_id} in phase {phase}: no qualified horizons left")

    def qualify_for_horizon(self, model_id: str, horizon: str) -> None:
        """Restore a horizon to an active model's qualified set."""
        self._check_mutable()
        model = self.get(model_id)
        if horizon not in self.horizons:
            raise StateInvariantError(f"Unknown horizon: {horizon}")
        if not model.is_active:
            raise StateInvariantError(f"Cannot requalify eliminated model {model_id}")
        model.qualified_horizons.add(horizon)
        model.disqualified_horizons.pop(horizon, None)

    def advance_phase(self) -> int:
        """
        Move to the next phase.

        Raises:
            StateInvariantError: If already at the final phase
        """
        self._check_mutable()
        if self.current_phase >= MAX_PHASE:
            raise StateInvariantError(f"Cannot advance past phase {MAX_PHASE}")
        self.current_phase += 1
        logger.debug(f"Advanced to phase {self.current_phase}")
        return self.current_phase

    def seal(self) -> None:
        """Freeze the store; any later mutation raises."""
        self.sealed = True

    # Label views

    def labels_by_horizon(self, exclude_missing: bool = True) -> Dict[str, List[bool]]:
        """
        One label per round per horizon, read from the first model that
        scored the round.

        Args:
            exclude_missing: Drop labels that fell back to the benign value
        """
        seen: Dict[str, Dict[int, bool]] = {h: {} for h in self.horizons}
        for model in self._models.values():
            for rs in model.round_scores:
                for horizon, label in rs.labels.items():
                    if exclude_missing and horizon in rs.data_missing_horizons:
                        continue
                    seen.setdefault(horizon, {}).setdefault(rs.round_number, label)
        return {h: [by_round[r] for r in sorted(by_round)] for h, by_round in seen.items()}

    def snapshot(self) -> Dict[str, Dict]:
        return {m.model_id: m.to_dict() for m in self._models.values()}
