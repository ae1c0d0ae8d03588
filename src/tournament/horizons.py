"""
Horizon registry.

A horizon is a named prediction window ("15m", "1h", ...). Every model in a
tournament is evaluated on the same horizon set; the horizon parameters only
matter to the ground-truth resolver and to timing diagnostics.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

import yaml

logger = logging.getLogger(__name__)

DEFAULT_HORIZONS_PATH = Path("config/horizons.yaml")


class HorizonError(Exception):
    """Raised when a horizon definition is invalid."""
    pass


class GroundTruthMethod(str, Enum):
    """Detection algorithm the external resolver uses for a horizon."""
    FRACTAL = "fractal"
    ZIGZAG = "zigzag"


@dataclass(frozen=True)
class HorizonSpec:
    """Static parameters of one prediction horizon."""
    horizon_id: str
    bar_size_minutes: int
    lookback_minutes: int
    forward_window_minutes: int
    max_drawdown: float = 0.0
    ground_truth_method: GroundTruthMethod = GroundTruthMethod.FRACTAL
    method_params: Dict[str, float] = field(default_factory=dict)

    @property
    def candles_per_window(self) -> int:
        """Number of bars in the forward window."""
        return self.forward_window_minutes // self.bar_size_minutes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "horizon_id": self.horizon_id,
            "bar_size_minutes": self.bar_size_minutes,
            "lookback_minutes": self.lookback_minutes,
            "forward_window_minutes": self.forward_window_minutes,
            "max_drawdown": self.max_drawdown,
            "ground_truth_method": self.ground_truth_method.value,
            "method_params": dict(self.method_params),
        }


DEFAULT_HORIZONS: List[HorizonSpec] = [
    HorizonSpec("15m", 5, 120, 15, 0.0, GroundTruthMethod.FRACTAL, {"fractal_l": 3}),
    HorizonSpec("1h", 15, 480, 60, 0.0, GroundTruthMethod.FRACTAL, {"fractal_l": 3}),
    HorizonSpec("4h", 60, 1920, 240, 0.0, GroundTruthMethod.ZIGZAG, {"zigzag_threshold": 0.015}),
    HorizonSpec("24h", 240, 11520, 1440, 0.0, GroundTruthMethod.ZIGZAG, {"zigzag_threshold": 0.025}),
]


def horizon_from_dict(data: Dict[str, Any]) -> HorizonSpec:
    """
    Build a HorizonSpec from a mapping.

    Args:
        data: Mapping with horizon_id, bar_size_minutes, lookback_minutes,
            forward_window_minutes and optional method fields

    Returns:
        HorizonSpec

    Raises:
        HorizonError: If required fields are missing or inconsistent
    """
    missing = [k for k in ("horizon_id", "bar_size_minutes", "lookback_minutes",
                           "forward_window_minutes") if k not in data]
    if missing:
        raise HorizonError(f"Horizon definition missing fields: {missing}")

    try:
        method = GroundTruthMethod(data.get("ground_truth_method", "fractal"))
    except ValueError:
        raise HorizonError(
            f"Unknown ground_truth_method for {data['horizon_id']}: "
            f"{data.get('ground_truth_method')}"
        )

    spec = HorizonSpec(
        horizon_id=str(data["horizon_id"]),
        bar_size_minutes=int(data["bar_size_minutes"]),
        lookback_minutes=int(data["lookback_minutes"]),
        forward_window_minutes=int(data["forward_window_minutes"]),
        max_drawdown=float(data.get("max_drawdown", 0.0)),
        ground_truth_method=method,
        method_params=dict(data.get("method_params") or {}),
    )

    if spec.bar_size_minutes <= 0:
        raise HorizonError(f"{spec.horizon_id}: bar_size_minutes must be positive")
    if spec.forward_window_minutes < spec.bar_size_minutes:
        raise HorizonError(
            f"{spec.horizon_id}: forward window shorter than one bar"
        )
    return spec


def load_horizons(path: Path = DEFAULT_HORIZONS_PATH) -> List[HorizonSpec]:
    """
    Load the horizon set from a YAML file.

    Expected layout::

        horizons:
          - horizon_id: 15m
            bar_size_minutes: 5
            ...

    Args:
        path: Path to horizons YAML

    Returns:
        List of HorizonSpec in file order

    Raises:
        HorizonError: If the file is malformed or ids repeat
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    raw = data.get("horizons")
    if not isinstance(raw, list) or not raw:
        raise HorizonError(f"{path}: 'horizons' must be a non-empty list")

    horizons = [horizon_from_dict(item) for item in raw]
    ids = [h.horizon_id for h in horizons]
    if len(set(ids)) != len(ids):
        raise HorizonError(f"{path}: duplicate horizon ids {ids}")

    logger.debug(f"Loaded {len(horizons)} horizons from {path}")
    return horizons


def horizon_ids(horizons: List[HorizonSpec]) -> List[str]:
    return [h.horizon_id for h in horizons]
