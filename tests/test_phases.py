"""
Tests for the four-phase elimination runner.
"""

import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.tournament.config import PhaseConfig, QualificationConfig, TournamentConfig
from src.tournament.phases import (
    run_all_phases,
    run_phase0,
    run_phase1,
    run_phase2,
    run_phase3,
)
from src.tournament.state import ModelStateStore, RoundScore, StateInvariantError

HORIZONS = ["15m", "1h", "4h", "24h"]


def informative(r, label):
    return 0.7 if label else 0.3


def feed(store, model_id, n_rounds, loss_fn, prob_fn=informative, label_fn=None):
    """
    Append n_rounds of scores to a model.

    loss_fn(round, horizon) gives the per-horizon loss; prob_fn(round, label)
    gives the prediction used by the validity checks.
    """
    label_fn = label_fn or (lambda r: r % 2 == 0)
    for r in range(1, n_rounds + 1):
        label = label_fn(r)
        by_horizon = {h: loss_fn(r, h) for h in store.horizons}
        store.add_round_score(model_id, RoundScore(
            round_number=r,
            log_loss=sum(by_horizon.values()) / len(by_horizon),
            log_loss_by_horizon=by_horizon,
            predictions={h: prob_fn(r, label) for h in store.horizons},
            labels={h: label for h in store.horizons},
        ))


def constant_loss(value):
    return lambda r, h: value


class TestPhase0:
    """Tests for the sanity phase."""

    def test_degenerate_everywhere_eliminated(self):
        store = ModelStateStore(["good", "contrarian"], HORIZONS)
        feed(store, "good", 6, constant_loss(0.36))
        feed(store, "contrarian", 6, constant_loss(1.2), prob_fn=lambda r, y: 0.3 if y else 0.7)

        outcome = run_phase0(store, TournamentConfig())

        assert list(outcome.eliminated) == ["contrarian"]
        assert outcome.eliminated["contrarian"].startswith("Degenerate on all horizons")
        model = store.get("contrarian")
        assert model.eliminated_in_phase == 0
        assert not store.is_eliminated("good")

    def test_partial_failure_disqualifies_horizon(self):
        """Failing one horizon only drops that horizon."""
        store = ModelStateStore(["a"], HORIZONS)
        feed(store, "a", 6, lambda r, h: 1.5 if h == "24h" else 0.36)

        outcome = run_phase0(store, TournamentConfig())

        assert outcome.eliminated == {}
        assert "24h" in outcome.disqualified["a"]
        model = store.get("a")
        assert model.qualified_horizons == {"15m", "1h", "4h"}
        assert model.disqualified_horizons["24h"].phase == 0

    def test_constant_predictor_eliminated(self):
        store = ModelStateStore(["coin"], HORIZONS)
        feed(store, "coin", 6, constant_loss(0.693), prob_fn=lambda r, y: 0.5)
        outcome = run_phase0(store, TournamentConfig())
        assert "constant_predictor" in outcome.eliminated["coin"]

    def test_young_models_skipped(self):
        store = ModelStateStore(["rookie"], HORIZONS)
        feed(store, "rookie", 5, constant_loss(1.5))
        outcome = run_phase0(store, TournamentConfig())
        assert outcome.skipped == ["rookie"]
        assert not store.is_eliminated("rookie")

    def test_replay_makes_same_decisions(self):
        store = ModelStateStore(["good", "contrarian", "a"], HORIZONS)
        feed(store, "good", 6, constant_loss(0.36))
        feed(store, "contrarian", 6, constant_loss(1.2), prob_fn=lambda r, y: 0.3 if y else 0.7)
        feed(store, "a", 6, lambda r, h: 1.5 if h == "24h" else 0.36)

        first = run_phase0(store, TournamentConfig())
        second = run_phase0(store, TournamentConfig())

        assert second.eliminated == first.eliminated
        assert list(first.disqualified) == ["a"]
        assert second.disqualified == first.disqualified
        assert store.get("a").qualified_horizons == {"15m", "1h", "4h"}


class TestPhase1:
    """Tests for percentile qualification."""

    def test_bottom_of_cohort_disqualified(self):
        store = ModelStateStore(["a", "b", "c", "d"], HORIZONS)
        for model_id, loss in [("a", 0.3), ("b", 0.4), ("c", 0.5), ("d", 0.9)]:
            feed(store, model_id, 12, constant_loss(loss))

        outcome = run_phase1(store, PhaseConfig(), QualificationConfig())

        assert outcome.percentiles["a"]["1h"] == 100.0
        assert outcome.percentiles["d"]["1h"] == 0.0
        assert outcome.eliminated == {"d": "no_qualified_horizons"}
        assert store.get("d").eliminated_in_phase == 1
        assert store.get("c").qualified_horizons == set(HORIZONS)
        assert outcome.qualification.by_horizon["1h"].enforced

    def test_single_class_labels_not_enforced(self):
        """All-true labels report qualification without applying it."""
        store = ModelStateStore(["a", "b", "c"], ["1h"])
        for model_id, loss in [("a", 0.3), ("b", 0.4), ("c", 0.5)]:
            feed(store, model_id, 12, constant_loss(loss), label_fn=lambda r: True)

        outcome = run_phase1(store, PhaseConfig(), QualificationConfig())

        hq = outcome.qualification.by_horizon["1h"]
        assert not hq.enforced
        assert hq.disqualified_models == ["a", "b", "c"]
        # Only the percentile gate applies.
        assert list(outcome.disqualified) == ["c"]
        assert not store.is_eliminated("a")

    def test_small_cohort_is_neutral(self):
        store = ModelStateStore(["a", "b"], HORIZONS)
        feed(store, "a", 12, constant_loss(0.3))
        feed(store, "b", 12, constant_loss(0.6))
        outcome = run_phase1(store, PhaseConfig(), QualificationConfig())
        assert outcome.percentiles["b"]["1h"] == 50.0
        assert outcome.disqualified == {}

    def test_margin_policy_applied(self):
        """Models above prevalence + margin lose the horizon."""
        store = ModelStateStore(["a", "b", "c", "d"], ["1h"])
        for model_id, loss in [("a", 0.3), ("b", 0.35), ("c", 0.8), ("d", 0.85)]:
            feed(store, model_id, 12, constant_loss(loss))
        outcome = run_phase1(store, PhaseConfig(), QualificationConfig())
        # c sits at percentile 33.3 but above ln2 + 0.1.
        assert "above threshold" in outcome.disqualified["c"]["1h"]
        assert store.is_eliminated("c")

    def test_replay_makes_same_decisions(self):
        """Models removed by this phase stay in its cohort on a second run."""
        store = ModelStateStore(["a", "b", "c", "d"], HORIZONS)
        for model_id, loss in [("a", 0.3), ("b", 0.4), ("c", 0.5), ("d", 0.9)]:
            feed(store, model_id, 12, constant_loss(loss))

        first = run_phase1(store, PhaseConfig(), QualificationConfig())
        second = run_phase1(store, PhaseConfig(), QualificationConfig())

        assert second.eliminated == first.eliminated == {"d": "no_qualified_horizons"}
        assert second.percentiles == first.percentiles
        assert store.get("c").qualified_horizons == set(HORIZONS)

    def test_earlier_disqualifications_stay_out(self):
        store = ModelStateStore(["a", "b", "c", "d"], ["1h"])
        for model_id, loss in [("a", 0.3), ("b", 0.4), ("c", 0.5), ("d", 0.2)]:
            feed(store, model_id, 12, constant_loss(loss))
        store.disqualify_from_horizon("d", "1h", 0, "sanity: constant_predictor")

        outcome = run_phase1(store, PhaseConfig(), QualificationConfig())

        assert "d" not in outcome.percentiles
        assert outcome.percentiles["c"]["1h"] == 0.0

    def test_qualified_by_model_reported(self):
        store = ModelStateStore(["a", "b", "c"], ["1h"])
        for model_id, loss in [("a", 0.3), ("b", 0.4), ("c", 0.9)]:
            feed(store, model_id, 12, constant_loss(loss))
        data = run_phase1(store, PhaseConfig(), QualificationConfig()).to_dict()
        assert data["qualified_by_model"] == {"a": ["1h"], "b": ["1h"], "c": []}


class TestPhase2:
    """Tests for stability and regret."""

    def test_high_regret_eliminated(self):
        store = ModelStateStore(["f1", "f2", "f3", "spiky"], ["15m", "1h"])
        for model_id in ("f1", "f2", "f3"):
            feed(store, model_id, 12, constant_loss(0.5))
        feed(store, "spiky", 12, lambda r, h: 0.3 if r <= 6 else 2.0)

        outcome = run_phase2(store, PhaseConfig())

        assert outcome.eliminated == {"spiky": "High regret on 15m, 1h"}
        assert outcome.regret["spiky"]["15m"] == pytest.approx(4.0)
        assert outcome.regret["f1"]["15m"] == pytest.approx(1.0)
        assert store.get("spiky").eliminated_in_phase == 2

    def test_replay_makes_same_decisions(self):
        """The cohort median still counts the model this phase removed."""
        store = ModelStateStore(["f1", "f2", "mid", "spiky"], ["15m", "1h"])
        for model_id in ("f1", "f2"):
            feed(store, model_id, 12, constant_loss(0.5))
        feed(store, "mid", 12, constant_loss(0.8))
        feed(store, "spiky", 12, lambda r, h: 0.3 if r <= 6 else 2.0)

        first = run_phase2(store, PhaseConfig())
        second = run_phase2(store, PhaseConfig())

        assert list(first.eliminated) == ["spiky"]
        assert second.eliminated == first.eliminated
        assert second.regret == first.regret
        assert not store.is_eliminated("mid")

    def test_regret_on_one_horizon_survives(self):
        store = ModelStateStore(["f1", "f2", "f3", "spiky"], ["15m", "1h"])
        for model_id in ("f1", "f2", "f3"):
            feed(store, model_id, 12, constant_loss(0.5))
        feed(store, "spiky", 12, lambda r, h: 2.0 if (h == "1h" and r > 6) else 0.5)
        outcome = run_phase2(store, PhaseConfig())
        assert outcome.eliminated == {}

    def test_unstable_eliminated(self):
        store = ModelStateStore(["f1", "f2", "f3", "wobbly"], ["15m", "1h", "4h"])
        for model_id in ("f1", "f2", "f3"):
            feed(store, model_id, 12, constant_loss(0.5))
        feed(store, "wobbly", 12, lambda r, h: 0.45 if r <= 6 else 0.55)

        outcome = run_phase2(store, PhaseConfig())

        assert outcome.eliminated == {"wobbly": "Unstable on 15m, 1h, 4h"}

    def test_flat_models_never_unstable(self):
        store = ModelStateStore(["f1", "f2", "f3"], HORIZONS)
        for model_id in ("f1", "f2", "f3"):
            feed(store, model_id, 12, constant_loss(0.4))
        assert run_phase2(store, PhaseConfig()).eliminated == {}

    def test_short_history_skipped(self):
        store = ModelStateStore(["a", "b"], HORIZONS)
        feed(store, "a", 12, constant_loss(0.5))
        feed(store, "b", 11, constant_loss(3.0))
        outcome = run_phase2(store, PhaseConfig())
        assert outcome.skipped == ["b"]
        assert "b" not in outcome.regret


class TestPhase3:
    """Tests for composite ranking."""

    def test_order_by_composite(self):
        store = ModelStateStore(["worst", "best", "mid"], HORIZONS)
        feed(store, "best", 12, constant_loss(0.2))
        feed(store, "mid", 12, constant_loss(0.5))
        feed(store, "worst", 12, constant_loss(0.8))

        rankings = run_phase3(store, PhaseConfig())

        assert [r.model_id for r in rankings] == ["best", "mid", "worst"]
        assert [r.rank for r in rankings] == [1, 2, 3]
        assert rankings[0].composite_score == pytest.approx(0.2)

    def test_arena_size_and_id_tiebreak(self):
        ids = [f"m{i}" for i in range(9, -1, -1)]
        store = ModelStateStore(ids, HORIZONS)
        for model_id in ids:
            feed(store, model_id, 12, constant_loss(0.4))

        rankings = run_phase3(store, PhaseConfig())

        assert [r.model_id for r in rankings] == [f"m{i}" for i in range(8)]

    def test_only_qualified_horizons_count(self):
        store = ModelStateStore(["a"], HORIZONS)
        feed(store, "a", 12, lambda r, h: 2.0 if h == "24h" else 0.4)
        store.disqualify_from_horizon("a", "24h", 1, "weak")
        rankings = run_phase3(store, PhaseConfig())
        assert rankings[0].composite_score == pytest.approx(0.4)
        assert rankings[0].qualified_horizons == ["15m", "1h", "4h"]

    def test_horizon_weights(self):
        store = ModelStateStore(["a"], ["15m", "24h"])
        feed(store, "a", 12, lambda r, h: 0.2 if h == "15m" else 0.6)
        rankings = run_phase3(store, PhaseConfig(horizon_weights={"24h": 3.0}))
        assert rankings[0].composite_score == pytest.approx((0.2 + 3 * 0.6) / 4)

    def test_eliminated_not_ranked(self):
        store = ModelStateStore(["a", "b"], HORIZONS)
        feed(store, "a", 12, constant_loss(0.4))
        feed(store, "b", 12, constant_loss(0.3))
        store.eliminate_model("b", 2, "High regret")
        assert [r.model_id for r in run_phase3(store, PhaseConfig())] == ["a"]


class TestRunAllPhases:
    """Tests for the full runner."""

    def test_seals_store(self):
        store = ModelStateStore(["a", "b", "c"], HORIZONS)
        for model_id, loss in [("a", 0.3), ("b", 0.4), ("c", 0.5)]:
            feed(store, model_id, 12, constant_loss(loss))

        result = run_all_phases(store, TournamentConfig())

        assert [o.phase for o in result.outcomes] == [0, 1, 2]
        assert result.qualification is not None
        assert store.sealed
        assert store.current_phase == 3
        assert [r.model_id for r in result.rankings] == ["a", "b"]

    def test_cannot_run_twice(self):
        store = ModelStateStore(["a"], HORIZONS)
        store.advance_phase()
        with pytest.raises(StateInvariantError, match="already run"):
            run_all_phases(store, TournamentConfig())

    def test_eliminations_are_final(self):
        """A model eliminated early never comes back or gets re-stamped."""
        store = ModelStateStore(["a", "b", "c", "coin"], HORIZONS)
        for model_id, loss in [("a", 0.3), ("b", 0.35), ("c", 0.4)]:
            feed(store, model_id, 12, constant_loss(loss))
        feed(store, "coin", 12, constant_loss(0.693), prob_fn=lambda r, y: 0.5)

        result = run_all_phases(store, TournamentConfig())

        coin = store.get("coin")
        assert coin.eliminated_in_phase == 0
        assert coin.elimination_reason.startswith("Degenerate on all horizons")
        assert "coin" not in [r.model_id for r in result.rankings]
        assert "coin" not in result.outcomes[1].percentiles

    def test_full_run_ranks_best_first(self):
        """
        Uniform losses of 0.2, 0.5 and 0.8 through every phase.

        The 0.8 model sits at percentile 0 of the three-model cohort, below
        the 30th-percentile cut, so phase 1 takes it off every horizon and
        it never reaches the ranking.
        """
        store = ModelStateStore(["worst", "best", "mid"], HORIZONS)
        for model_id, loss in [("best", 0.2), ("mid", 0.5), ("worst", 0.8)]:
            feed(store, model_id, 12, constant_loss(loss))

        result = run_all_phases(store, TournamentConfig())

        assert [r.model_id for r in result.rankings] == ["best", "mid"]
        assert [r.composite_score for r in result.rankings] == pytest.approx([0.2, 0.5])
        worst = store.get("worst")
        assert worst.eliminated_in_phase == 1
        assert worst.disqualified_horizons["1h"].reason.startswith("percentile 0.0")

    def test_full_run_caps_arena(self):
        ids = [f"m{i}" for i in range(9, -1, -1)]
        store = ModelStateStore(ids, HORIZONS)
        for model_id in ids:
            feed(store, model_id, 12, constant_loss(0.4))

        result = run_all_phases(store, TournamentConfig())

        assert [r.model_id for r in result.rankings] == [f"m{i}" for i in range(8)]
        assert all(not store.is_eliminated(m) for m in ids)
