"""
Tests for per-round diagnostics and horizon dataset statistics.
"""

import json
import math
from datetime import datetime, timedelta, timezone

import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.tournament.diagnostics import (
    DiagnosticsError,
    append_diagnostics,
    build_round_diagnostic,
    compute_horizon_stats,
    read_diagnostics,
    time_to_resolution_ratio,
    timing_error_candles,
)
from src.tournament.horizons import DEFAULT_HORIZONS
from src.tournament.records import Forecast, LabelRecord, MissingForecast

SPECS = {h.horizon_id: h for h in DEFAULT_HORIZONS}
AS_OF = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestTiming:
    """Tests for time-to-resolution and timing error."""

    def test_ratio_mid_window(self):
        ratio = time_to_resolution_ratio(AS_OF, AS_OF + timedelta(minutes=30), SPECS["1h"])
        assert ratio == pytest.approx(0.5)

    def test_ratio_clamped(self):
        late = time_to_resolution_ratio(AS_OF, AS_OF + timedelta(hours=3), SPECS["1h"])
        early = time_to_resolution_ratio(AS_OF, AS_OF - timedelta(minutes=5), SPECS["1h"])
        assert late == 1.0
        assert early == 0.0

    def test_ratio_unknown(self):
        assert time_to_resolution_ratio(AS_OF, None, SPECS["1h"]) is None

    def test_naive_and_aware_mix(self):
        """A naive as-of time is read as UTC."""
        naive = AS_OF.replace(tzinfo=None)
        ratio = time_to_resolution_ratio(naive, AS_OF + timedelta(minutes=15), SPECS["1h"])
        assert ratio == pytest.approx(0.25)

    def test_timing_error(self):
        """Resolving mid-window on 4 candles is 2 candles back."""
        assert timing_error_candles(2, 0.5, 4) == pytest.approx(0.0)
        assert timing_error_candles(3, 0.5, 4) == pytest.approx(1.0)
        assert timing_error_candles(0, 0.0, 3) == pytest.approx(-3.0)


class TestBuildRoundDiagnostic:
    """Tests for build_round_diagnostic."""

    def make(self):
        forecasts = {
            "1h": Forecast("m1", "1h", 0.7, confidence=0.8, candles_back=1),
            "4h": MissingForecast("m1", "4h", "no_probability"),
        }
        labels = {
            "1h": LabelRecord("1h", True, AS_OF + timedelta(minutes=45)),
            "4h": LabelRecord("4h", True, None, data_missing=True),
        }
        return build_round_diagnostic(
            round_number=3,
            timestamp=AS_OF,
            model_id="m1",
            forecasts=forecasts,
            labels=labels,
            log_loss_by_horizon={"1h": -math.log(0.7), "4h": -math.log(1e-6)},
            brier_by_horizon={"1h": 0.09, "4h": None},
            ratios={"1h": 0.75, "4h": None},
            horizon_specs=SPECS,
        )

    def test_integrity(self):
        diag = self.make()
        assert diag.integrity.probability == {"1h": 0.7, "4h": None}
        assert diag.integrity.missing_reasons == {"4h": "no_probability"}
        assert not diag.integrity.schema_valid

    def test_timing(self):
        diag = self.make()
        # 0.75 of a 4-candle window leaves 1 candle back.
        assert diag.timing.timing_error_candles["1h"] == pytest.approx(0.0)
        assert diag.timing.timing_error_candles["4h"] is None

    def test_ground_truth(self):
        diag = self.make()
        assert diag.ground_truth["4h"].data_missing
        assert diag.ground_truth["1h"].first_resolution_at == "2026-03-01T12:45:00+00:00"

    def test_to_dict_is_json_serializable(self):
        data = self.make().to_dict()
        assert data["integrity"]["schema_valid"] is False
        json.dumps(data)


class TestHorizonStats:
    """Tests for compute_horizon_stats."""

    def test_missing_labels_excluded(self):
        labels = [
            LabelRecord("1h", True),
            LabelRecord("1h", False),
            LabelRecord("1h", True),
            LabelRecord("1h", True, data_missing=True),
        ]
        stats = compute_horizon_stats("1h", labels)
        assert stats.total_rounds == 4
        assert stats.resolved_rounds == 3
        assert stats.missing_rounds == 1
        assert stats.true_count == 2
        assert stats.prevalence == pytest.approx(2 / 3)
        assert stats.random_baseline_log_loss == pytest.approx(math.log(2))
        assert stats.prevalence_baseline_log_loss < math.log(2)

    def test_no_resolved_labels(self):
        stats = compute_horizon_stats("1h", [LabelRecord("1h", True, data_missing=True)])
        assert stats.prevalence is None
        assert stats.prevalence_baseline_log_loss == 0.0


class TestDiagnosticsFile:
    """Tests for the JSONL diagnostics log."""

    def test_append_and_read(self, tmp_path):
        path = tmp_path / "nested" / "diagnostics.jsonl"
        diag = TestBuildRoundDiagnostic().make()
        assert append_diagnostics(path, [diag]) == 1
        assert append_diagnostics(path, [diag]) == 1

        records = read_diagnostics(path)
        assert len(records) == 2
        assert records[0]["model_id"] == "m1"
        assert records[0]["round_number"] == 3

    def test_filter(self, tmp_path):
        path = tmp_path / "diagnostics.jsonl"
        diag = TestBuildRoundDiagnostic().make()
        append_diagnostics(path, [diag])
        assert read_diagnostics(path, filter_fn=lambda r: r["model_id"] == "other") == []

    def test_one_round_written_together(self, tmp_path):
        path = tmp_path / "diagnostics.jsonl"
        builder = TestBuildRoundDiagnostic()
        first = builder.make()
        assert append_diagnostics(path, [first, first]) == 2
        assert append_diagnostics(path, []) == 0
        assert len(path.read_text().splitlines()) == 2

    def test_model_and_round_filters(self, tmp_path):
        path = tmp_path / "diagnostics.jsonl"
        diag = TestBuildRoundDiagnostic().make()
        append_diagnostics(path, [diag])
        assert len(read_diagnostics(path, model_id="m1")) == 1
        assert read_diagnostics(path, model_id="m2") == []
        assert len(read_diagnostics(path, rounds=(1, 3))) == 1
        assert read_diagnostics(path, rounds=(4, 9)) == []

    def test_missing_file_is_empty(self, tmp_path):
        assert read_diagnostics(tmp_path / "nope.jsonl") == []

    def test_invalid_line_raises(self, tmp_path):
        path = tmp_path / "diagnostics.jsonl"
        path.write_text('{"model_id": "m1"}\nnot json\n')
        with pytest.raises(DiagnosticsError, match="line 2"):
            read_diagnostics(path)
