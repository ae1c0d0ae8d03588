"""
Tournament configuration.

Every tunable threshold of the engine lives in one TournamentConfig.
Configs are loaded from JSON, checked against a JSON schema plus business
rules, and deep-merged over the built-in defaults so a partial file only
needs to name what it overrides.
"""

import copy
import json
import logging
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/tournament_config.json")
DEFAULT_SCHEMA_PATH = Path("config/schemas/tournament_config.schema.json")

QUALIFICATION_MODES = ("prevalence_margin", "top_percent")
EXTENSION_COHORTS = ("qualified", "eligible")
DEGENERACY_REASONS = (
    "coverage",
    "failure_rate",
    "constant_predictor",
    "extreme_predictions",
    "extreme_wrong_rate",
)


class ConfigError(Exception):
    """Raised when a tournament configuration is invalid."""
    pass


@dataclass
class ScoringConfig:
    epsilon: float = 1e-15
    worst_case_probability: float = 1e-6
    calibration_bins: int = 10
    min_samples_for_calibration: int = 20
    min_cohort_for_percentile: int = 3
    neutral_percentile: float = 50.0


@dataclass
class ValidityConfig:
    min_coverage: float = 0.8
    max_failure_rate: float = 0.1
    constant_max_unique: int = 2
    constant_max_std: float = 0.02
    unique_rounding_decimals: int = 6
    extreme_high: float = 0.9
    extreme_low: float = 0.1
    max_extreme_rate: float = 0.9
    confident_high: float = 0.8
    confident_low: float = 0.2
    max_extreme_wrong_rate: float = 0.2


@dataclass
class PhaseConfig:
    phase0_min_rounds: int = 6
    phase0_max_mean_log_loss: float = 0.9
    phase0_degenerate_reasons: List[str] = field(
        default_factory=lambda: ["constant_predictor", "extreme_predictions", "extreme_wrong_rate"]
    )
    phase1_min_percentile: float = 30.0
    phase2_min_rounds: int = 12
    phase2_window: int = 6
    phase2_regret_threshold: float = 1.5
    phase2_min_regret_horizons: int = 2
    phase2_instability_multiple: float = 2.0
    phase2_min_unstable_horizons: int = 3
    phase3_arena_size: int = 8
    horizon_weights: Dict[str, float] = field(default_factory=dict)

    def weight_for(self, horizon: str) -> float:
        return float(self.horizon_weights.get(horizon, 1.0))


@dataclass
class QualificationConfig:
    mode: str = "prevalence_margin"
    margin: float = 0.1
    top_percent: float = 0.7


@dataclass
class RankabilityConfig:
    min_effective_rounds: int = 18
    min_minority: int = 8
    min_prevalence: float = 0.2
    max_prevalence: float = 0.8


@dataclass
class ExtensionConfig:
    enabled: bool = True
    n_base: int = 24
    n_ext: int = 6
    n_threshold: int = 5
    include_models: str = "eligible"


@dataclass
class EnsembleConfig:
    enabled: bool = True
    rolling_window_size: int = 6
    alpha: float = 4.0
    min_models: int = 3


@dataclass
class TournamentConfig:
    """All tunables of one tournament."""
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    validity: ValidityConfig = field(default_factory=ValidityConfig)
    phases: PhaseConfig = field(default_factory=PhaseConfig)
    qualification: QualificationConfig = field(default_factory=QualificationConfig)
    rankability: RankabilityConfig = field(default_factory=RankabilityConfig)
    extension: ExtensionConfig = field(default_factory=ExtensionConfig)
    ensemble: EnsembleConfig = field(default_factory=EnsembleConfig)
    benign_label: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_TOURNAMENT_CONFIG: Dict[str, Any] = TournamentConfig().to_dict()


def deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge overrides into a copy of base.

    Nested dicts are merged key by key; any other value in overrides
    replaces the base value outright.
    """
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _build(cls, data: Dict[str, Any], path: str):
    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigError(f"Unknown config keys at {path or 'root'}: {sorted(unknown)}")

    kwargs = {}
    for name, value in data.items():
        default = getattr(cls(), name)
        if is_dataclass(default):
            if not isinstance(value, dict):
                raise ConfigError(f"{path}{name} must be an object")
            kwargs[name] = _build(type(default), value, f"{path}{name}.")
        else:
            kwargs[name] = value
    return cls(**kwargs)


def validate_tournament_config(
    config: Dict[str, Any],
    schema_path: Optional[Path] = DEFAULT_SCHEMA_PATH
) -> List[str]:
    """
    Validate a (merged) config dict against schema and business rules.

    Validation rules:
    1. Probabilities and rates lie in [0, 1]
    2. Low thresholds sit below their high counterparts
    3. qualification.mode is prevalence_margin or top_percent
    4. extension.include_models is qualified or eligible
    5. phase0_degenerate_reasons only names known validity reasons
    6. Window and count parameters are positive

    Args:
        config: Config dictionary (typically already merged over defaults)
        schema_path: Path to JSON schema (optional)

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    if schema_path is not None and schema_path.exists():
        try:
            with open(schema_path) as f:
                schema = json.load(f)
            jsonschema.validate(config, schema)
        except jsonschema.ValidationError as e:
            errors.append(f"Schema validation failed: {e.message}")
            return errors
        except (IOError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read config schema {schema_path}: {e}")

    merged = deep_merge(DEFAULT_TOURNAMENT_CONFIG, config)

    validity = merged["validity"]
    for key in ("min_coverage", "max_failure_rate", "max_extreme_rate",
                "max_extreme_wrong_rate", "extreme_high", "extreme_low",
                "confident_high", "confident_low"):
        value = validity.get(key)
        if not isinstance(value, (int, float)) or not 0 <= value <= 1:
            errors.append(f"validity.{key} must be in [0, 1], got {value}")
    if not errors:
        if validity["extreme_low"] >= validity["extreme_high"]:
            errors.append("validity.extreme_low must be below validity.extreme_high")
        if validity["confident_low"] >= validity["confident_high"]:
            errors.append("validity.confident_low must be below validity.confident_high")

    phases = merged["phases"]
    for reason in phases.get("phase0_degenerate_reasons", []):
        if reason not in DEGENERACY_REASONS:
            errors.append(f"phases.phase0_degenerate_reasons: unknown reason '{reason}'")
    for key in ("phase0_min_rounds", "phase2_min_rounds", "phase2_window", "phase3_arena_size"):
        if not isinstance(phases.get(key), int) or phases[key] < 1:
            errors.append(f"phases.{key} must be a positive integer")
    if not 0 <= phases.get("phase1_min_percentile", 0) <= 100:
        errors.append("phases.phase1_min_percentile must be in [0, 100]")
    for horizon, weight in phases.get("horizon_weights", {}).items():
        if not isinstance(weight, (int, float)) or weight < 0:
            errors.append(f"phases.horizon_weights.{horizon} must be non-negative")

    qualification = merged["qualification"]
    if qualification.get("mode") not in QUALIFICATION_MODES:
        errors.append(
            f"qualification.mode must be one of {QUALIFICATION_MODES}, "
            f"got '{qualification.get('mode')}'"
        )
    top = qualification.get("top_percent")
    if not isinstance(top, (int, float)) or not 0 < top <= 1:
        errors.append("qualification.top_percent must be in (0, 1]")

    rankability = merged["rankability"]
    if rankability.get("min_prevalence", 0) > rankability.get("max_prevalence", 1):
        errors.append("rankability.min_prevalence must not exceed max_prevalence")

    extension = merged["extension"]
    if extension.get("include_models") not in EXTENSION_COHORTS:
        errors.append(
            f"extension.include_models must be one of {EXTENSION_COHORTS}, "
            f"got '{extension.get('include_models')}'"
        )
    if not isinstance(extension.get("n_ext"), int) or extension["n_ext"] < 0:
        errors.append("extension.n_ext must be a non-negative integer")

    ensemble = merged["ensemble"]
    if not isinstance(ensemble.get("rolling_window_size"), int) or ensemble["rolling_window_size"] < 1:
        errors.append("ensemble.rolling_window_size must be a positive integer")
    if not isinstance(ensemble.get("min_models"), int) or ensemble["min_models"] < 1:
        errors.append("ensemble.min_models must be a positive integer")

    return errors


def config_from_dict(
    overrides: Optional[Dict[str, Any]] = None,
    schema_path: Optional[Path] = None
) -> TournamentConfig:
    """
    Build a TournamentConfig from a partial override dict.

    Args:
        overrides: Partial config; missing keys take defaults
        schema_path: Optional JSON schema to check the overrides against

    Returns:
        TournamentConfig

    Raises:
        ConfigError: If validation fails or unknown keys are present
    """
    overrides = overrides or {}
    errors = validate_tournament_config(overrides, schema_path=schema_path)
    if errors:
        raise ConfigError("Invalid tournament config: " + "; ".join(errors))
    merged = deep_merge(DEFAULT_TOURNAMENT_CONFIG, overrides)
    return _build(TournamentConfig, merged, "")


def load_tournament_config(
    config_path: Path = DEFAULT_CONFIG_PATH,
    schema_path: Optional[Path] = DEFAULT_SCHEMA_PATH
) -> TournamentConfig:
    """
    Load and validate a tournament config JSON file.

    Args:
        config_path: Path to tournament_config.json
        schema_path: Path to JSON schema (optional)

    Returns:
        TournamentConfig

    Raises:
        ConfigError: If the file is unreadable or invalid
    """
    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except (IOError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top-level value must be an object")

    config = config_from_dict(data, schema_path=schema_path)
    logger.info(f"Loaded tournament config from {config_path}")
    return config
