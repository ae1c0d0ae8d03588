"""
Per-round diagnostics and horizon dataset statistics.

A RoundDiagnostic captures one model's round: what it emitted (integrity),
what actually happened (ground truth), how it scored, and how its claimed
timing compared with the resolution time. Diagnostics are appended to a
JSONL file one round at a time under an exclusive lock and read back under
a shared one.
"""

import fcntl
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .horizons import HorizonSpec
from .records import Forecast, ForecastRecord, LabelRecord, as_utc
from .scoring import (
    RANDOM_BASELINE_LOG_LOSS,
    constant_baseline_log_losses,
    prevalence_log_loss,
)

logger = logging.getLogger(__name__)


class DiagnosticsError(Exception):
    """Raised when diagnostics cannot be written or read."""
    pass


@dataclass
class OutputIntegrity:
    probability: Dict[str, Optional[float]] = field(default_factory=dict)
    confidence: Dict[str, Optional[float]] = field(default_factory=dict)
    candles_back: Dict[str, Optional[int]] = field(default_factory=dict)
    missing_reasons: Dict[str, str] = field(default_factory=dict)

    @property
    def schema_valid(self) -> bool:
        return not self.missing_reasons


@dataclass
class GroundTruthEntry:
    label: bool
    data_missing: bool
    first_resolution_at: Optional[str] = None


@dataclass
class TimingDiagnostic:
    claimed_candles_back: Dict[str, Optional[int]] = field(default_factory=dict)
    time_to_resolution_ratio: Dict[str, Optional[float]] = field(default_factory=dict)
    timing_error_candles: Dict[str, Optional[float]] = field(default_factory=dict)


@dataclass
class RoundDiagnostic:
    round_number: int
    timestamp: str
    model_id: str
    integrity: OutputIntegrity
    ground_truth: Dict[str, GroundTruthEntry]
    log_loss: Dict[str, float]
    brier: Dict[str, Optional[float]]
    timing: TimingDiagnostic

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["integrity"]["schema_valid"] = self.integrity.schema_valid
        return data


def time_to_resolution_ratio(
    as_of: datetime,
    first_resolution_at: Optional[datetime],
    horizon: HorizonSpec
) -> Optional[float]:
    """
    Position of the resolution inside the forward window, in [0, 1].

    0 means the event resolved at as_of, 1 at the end of the window. None
    when the label carries no resolution time. Naive datetimes are read as
    UTC.
    """
    if first_resolution_at is None:
        return None
    elapsed = (as_utc(first_resolution_at) - as_utc(as_of)).total_seconds() / 60.0
    ratio = elapsed / horizon.forward_window_minutes
    return min(max(ratio, 0.0), 1.0)


def timing_error_candles(claimed_candles_back: int, ratio: float, candles_per_window: int) -> float:
    """
    Claimed minus actual candles back to the event.

    Positive means the model placed the event earlier than it happened.
    """
    actual_candles_back = (1.0 - ratio) * candles_per_window
    return claimed_candles_back - actual_candles_back


def build_round_diagnostic(
    round_number: int,
    timestamp: datetime,
    model_id: str,
    forecasts: Dict[str, ForecastRecord],
    labels: Dict[str, LabelRecord],
    log_loss_by_horizon: Dict[str, float],
    brier_by_horizon: Dict[str, Optional[float]],
    ratios: Dict[str, Optional[float]],
    horizon_specs: Dict[str, HorizonSpec]
) -> RoundDiagnostic:
    """
    Assemble the diagnostic of one model in one round.

    Args:
        round_number: Round number
        timestamp: Round as-of time
        model_id: Model id
        forecasts: {horizon: Forecast or MissingForecast}
        labels: {horizon: LabelRecord}
        log_loss_by_horizon: Per-horizon loss (worst case for failed slots)
        brier_by_horizon: Per-horizon Brier score, None for failed slots
        ratios: Per-horizon time-to-resolution ratio, None when unknown
        horizon_specs: {horizon: HorizonSpec}

    Returns:
        RoundDiagnostic
    """
    integrity = OutputIntegrity()
    timing = TimingDiagnostic()
    for horizon, record in forecasts.items():
        if isinstance(record, Forecast):
            integrity.probability[horizon] = record.probability
            integrity.confidence[horizon] = record.confidence
            integrity.candles_back[horizon] = record.candles_back
        else:
            integrity.probability[horizon] = None
            integrity.confidence[horizon] = None
            integrity.candles_back[horizon] = None
            integrity.missing_reasons[horizon] = record.reason

        claimed = integrity.candles_back[horizon]
        ratio = ratios.get(horizon)
        timing.claimed_candles_back[horizon] = claimed
        timing.time_to_resolution_ratio[horizon] = ratio
        if claimed is not None and ratio is not None and horizon in horizon_specs:
            timing.timing_error_candles[horizon] = timing_error_candles(
                claimed, ratio, horizon_specs[horizon].candles_per_window
            )
        else:
            timing.timing_error_candles[horizon] = None

    ground_truth = {
        horizon: GroundTruthEntry(
            label=lr.label,
            data_missing=lr.data_missing,
            first_resolution_at=lr.first_resolution_at.isoformat() if lr.first_resolution_at else None,
        )
        for horizon, lr in labels.items()
    }

    return RoundDiagnostic(
        round_number=round_number,
        timestamp=timestamp.isoformat(),
        model_id=model_id,
        integrity=integrity,
        ground_truth=ground_truth,
        log_loss=dict(log_loss_by_horizon),
        brier=dict(brier_by_horizon),
        timing=timing,
    )


@dataclass
class HorizonStats:
    """Dataset-level view of one horizon's labels."""
    horizon: str
    total_rounds: int
    resolved_rounds: int
    missing_rounds: int
    true_count: int
    false_count: int
    prevalence: Optional[float]
    random_baseline_log_loss: float
    prevalence_baseline_log_loss: float
    trivial_best_log_loss: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_horizon_stats(horizon: str, labels: Sequence[LabelRecord]) -> HorizonStats:
    """
    Label statistics of one horizon across rounds.

    Labels that fell back to the benign value are counted as missing and
    excluded from prevalence and baselines.
    """
    resolved = [lr.label for lr in labels if not lr.data_missing]
    true_count = sum(1 for y in resolved if y)
    false_count = len(resolved) - true_count
    baselines = constant_baseline_log_losses(resolved)
    return HorizonStats(
        horizon=horizon,
        total_rounds=len(labels),
        resolved_rounds=len(resolved),
        missing_rounds=len(labels) - len(resolved),
        true_count=true_count,
        false_count=false_count,
        prevalence=true_count / len(resolved) if resolved else None,
        random_baseline_log_loss=RANDOM_BASELINE_LOG_LOSS,
        prevalence_baseline_log_loss=prevalence_log_loss(true_count, false_count),
        trivial_best_log_loss=baselines.get("best"),
    )


def append_diagnostics(file_path: Path, diagnostics: Sequence[RoundDiagnostic]) -> int:
    """
    Append one round's diagnostics as JSON lines under a single exclusive lock.

    Every line is serialized before the file is opened, so a round is either
    written whole or not at all and concurrent readers never see half of it.

    Returns:
        Number of lines written

    Raises:
        DiagnosticsError: If serialization or the write fails
    """
    try:
        lines = [json.dumps(d.to_dict(), sort_keys=True) + "\n" for d in diagnostics]
    except (TypeError, ValueError) as e:
        raise DiagnosticsError(f"Failed to serialize diagnostic: {e}")
    if not lines:
        return 0

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.writelines(lines)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        raise DiagnosticsError(f"Failed to append diagnostics: {e}")
    return len(lines)


def read_diagnostics(
    file_path: Path,
    model_id: Optional[str] = None,
    rounds: Optional[Tuple[int, int]] = None,
    filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None
) -> List[Dict[str, Any]]:
    """
    Read diagnostics back from a JSONL file under a shared lock.

    Args:
        file_path: Diagnostics file
        model_id: Only this model's records
        rounds: Inclusive (first, last) round range
        filter_fn: Extra predicate on the decoded record

    Returns:
        Matching records in file order; empty when the file does not exist

    Raises:
        DiagnosticsError: On unreadable files or invalid JSON lines
    """
    if not file_path.exists():
        return []

    records = []
    try:
        with open(file_path, "r") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                lines = f.readlines()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        raise DiagnosticsError(f"Failed to read diagnostics: {e}")

    for line_num, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise DiagnosticsError(f"Invalid JSON on line {line_num}: {e}")
        if model_id is not None and record.get("model_id") != model_id:
            continue
        if rounds is not None and not rounds[0] <= record.get("round_number", -1) <= rounds[1]:
            continue
        if filter_fn is None or filter_fn(record):
            records.append(record)

    return records
