"""
Tests for the online rolling-window ensemble.
"""

import math

import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.tournament.config import EnsembleConfig
from src.tournament.ensemble import (
    EnsembleError,
    OnlineEnsemble,
    normalized_weights,
    weight_entropy,
)

HORIZONS = ["15m", "1h"]


@pytest.fixture
def ensemble():
    return OnlineEnsemble(HORIZONS)


class TestWeights:
    """Tests for the weighting helpers."""

    def test_equal_losses_equal_weights(self):
        weights = normalized_weights({"a": 0.5, "b": 0.5}, 4.0)
        assert weights == {"a": pytest.approx(0.5), "b": pytest.approx(0.5)}

    def test_lower_loss_higher_weight(self):
        weights = normalized_weights({"a": 0.2, "b": 0.8}, 4.0)
        assert weights["a"] > weights["b"]
        assert weights["a"] / weights["b"] == pytest.approx(math.exp(4.0 * 0.6))

    def test_extreme_losses_stay_finite(self):
        """The softmax does not overflow on huge losses."""
        weights = normalized_weights({"a": 0.1, "b": 5000.0}, 4.0)
        assert sum(weights.values()) == pytest.approx(1.0)
        assert all(math.isfinite(w) for w in weights.values())
        assert weights["a"] == pytest.approx(1.0)

    def test_empty(self):
        assert normalized_weights({}, 4.0) == {}

    def test_entropy(self):
        assert weight_entropy({"a": 1 / 3, "b": 1 / 3, "c": 1 / 3}) == pytest.approx(math.log(3))
        assert weight_entropy({"a": 1.0, "b": 0.0}) == 0.0


class TestBlend:
    """Tests for OnlineEnsemble.blend."""

    def test_no_history_is_simple_average(self, ensemble):
        result = ensemble.blend(1, "1h", {"a": 0.2, "b": 0.5, "c": 0.8}, label=True)
        assert result.is_scoreable
        assert result.probability == pytest.approx(0.5)
        assert result.weight_entropy == pytest.approx(math.log(3))
        assert result.log_loss == pytest.approx(math.log(2))
        assert result.brier == pytest.approx(0.25)

    def test_too_few_models_not_scoreable(self, ensemble):
        result = ensemble.blend(1, "1h", {"a": 0.2, "b": 0.5, "c": None}, label=True)
        assert not result.is_scoreable
        assert result.contributing_models == 2
        assert result.probability is None
        assert result.log_loss is None

    def test_blend_does_not_record(self, ensemble):
        ensemble.blend(1, "1h", {"a": 0.2, "b": 0.5, "c": 0.8})
        assert ensemble.results("1h") == []

    def test_unlabelled_blend_unscored(self, ensemble):
        result = ensemble.blend(1, "1h", {"a": 0.2, "b": 0.5, "c": 0.8})
        assert result.is_scoreable
        assert result.log_loss is None

    def test_unknown_horizon(self, ensemble):
        with pytest.raises(EnsembleError, match="Unknown horizon"):
            ensemble.blend(1, "7d", {"a": 0.5})

    def test_weights_follow_history(self, ensemble):
        """The model with the best recent losses pulls the blend its way."""
        for r in range(1, 4):
            result = ensemble.blend(r, "1h", {"a": 0.9, "b": 0.5, "c": 0.1}, label=True)
            ensemble.record(result, {"a": 0.1, "b": 0.7, "c": 2.3})

        result = ensemble.blend(4, "1h", {"a": 0.9, "b": 0.5, "c": 0.1}, label=True)
        assert result.weights["a"] > result.weights["b"] > result.weights["c"]
        assert result.probability > 0.7


class TestRecord:
    """Tests for OnlineEnsemble.record."""

    def test_window_is_bounded(self):
        ens = OnlineEnsemble(["1h"], EnsembleConfig(rolling_window_size=3))
        for r, loss in enumerate([5.0, 5.0, 1.0, 1.0, 1.0], start=1):
            result = ens.blend(r, "1h", {"a": 0.5, "b": 0.5, "c": 0.5})
            ens.record(result, {"a": loss})
        assert ens.rolling_mean("a", "1h") == pytest.approx(1.0)

    def test_no_history_prior(self, ensemble):
        assert ensemble.rolling_mean("new", "1h") == pytest.approx(math.log(2))

    def test_round_must_increase(self, ensemble):
        result = ensemble.blend(2, "1h", {"a": 0.5, "b": 0.5, "c": 0.5})
        ensemble.record(result, {"a": 0.7})
        with pytest.raises(EnsembleError, match="already recorded"):
            ensemble.record(ensemble.blend(2, "1h", {"a": 0.5}), {"a": 0.7})

    def test_horizons_independent(self, ensemble):
        result = ensemble.blend(1, "15m", {"a": 0.5, "b": 0.5, "c": 0.5})
        ensemble.record(result, {"a": 3.0})
        assert ensemble.rolling_mean("a", "15m") == pytest.approx(3.0)
        assert ensemble.rolling_mean("a", "1h") == pytest.approx(math.log(2))

    def test_current_weights(self, ensemble):
        result = ensemble.blend(1, "1h", {"a": 0.5, "b": 0.5, "c": 0.5})
        ensemble.record(result, {"a": 0.1, "b": 1.0})
        weights = ensemble.current_weights("1h", ["a", "b"])
        assert weights["a"] > weights["b"]


class TestSummarize:
    """Tests for performance summaries."""

    def test_counts_scored_and_skipped(self, ensemble):
        for r in range(1, 5):
            result = ensemble.blend(r, "1h", {"a": 0.8, "b": 0.8, "c": 0.8}, label=True)
            ensemble.record(result, {"a": 0.2, "b": 0.2, "c": 0.2})
        skipped = ensemble.blend(5, "1h", {"a": 0.8}, label=True)
        ensemble.record(skipped, {"a": 0.2})

        perf = ensemble.summarize("1h")
        assert perf.scored_rounds == 4
        assert perf.skipped_rounds == 1
        assert perf.mean_log_loss == pytest.approx(-math.log(0.8))
        assert perf.mean_brier == pytest.approx(0.04)
        # Four scored rounds are fewer than one six-round window.
        assert perf.worst_window_log_loss is None

    def test_empty_horizon(self, ensemble):
        perf = ensemble.summarize("15m")
        assert perf.scored_rounds == 0
        assert perf.mean_log_loss is None
        assert set(ensemble.summarize_all()) == set(HORIZONS)
