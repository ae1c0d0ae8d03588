"""
Boundary records for predictions and ground-truth labels.

Raw prediction and label dicts from the outside world are validated here,
once, and turned into tagged types. Core logic only ever sees Forecast,
MissingForecast and LabelRecord.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import jsonschema

from .scoring import is_valid_probability

logger = logging.getLogger(__name__)

PREDICTION_SCHEMA = {
    "type": "object",
    "required": ["model_id", "horizon"],
    "properties": {
        "model_id": {"type": "string", "minLength": 1},
        "horizon": {"type": "string", "minLength": 1},
        "probability": {"type": ["number", "null"]},
        "confidence": {"type": ["number", "null"], "minimum": 0, "maximum": 1},
        "candles_back": {"type": ["integer", "null"], "minimum": 0},
    },
}

LABEL_SCHEMA = {
    "type": "object",
    "required": ["horizon", "label"],
    "properties": {
        "horizon": {"type": "string", "minLength": 1},
        "label": {"type": ["boolean", "null"]},
        "first_resolution_at": {"type": ["string", "null"]},
    },
}


class RecordError(Exception):
    """Raised when a boundary record cannot be attributed or parsed."""
    pass


@dataclass(frozen=True)
class Forecast:
    """A valid probability forecast for one model on one horizon."""
    model_id: str
    horizon: str
    probability: float
    confidence: Optional[float] = None
    candles_back: Optional[int] = None

    is_missing = False


@dataclass(frozen=True)
class MissingForecast:
    """A forecast slot that produced no usable probability."""
    model_id: str
    horizon: str
    reason: str

    is_missing = True


ForecastRecord = Union[Forecast, MissingForecast]


@dataclass(frozen=True)
class LabelRecord:
    """
    Resolved ground truth for one horizon in one round.

    data_missing is set when the resolver had no forward market data; the
    label then holds the configured benign value.
    """
    horizon: str
    label: bool
    first_resolution_at: Optional[datetime] = None
    data_missing: bool = False


def as_utc(dt: datetime) -> datetime:
    """Treat a naive datetime as UTC; aware ones pass through."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (a trailing Z is accepted) as aware UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return as_utc(dt)


def parse_prediction_record(raw: Dict[str, Any]) -> ForecastRecord:
    """
    Validate a raw prediction dict and tag it.

    Records that cannot be attributed to a model and horizon raise. Records
    that can be attributed but carry no usable probability become
    MissingForecast so the slot is scored with the worst-case loss.

    Args:
        raw: {model_id, horizon, probability, confidence?, candles_back?}

    Returns:
        Forecast or MissingForecast

    Raises:
        RecordError: If model_id or horizon is missing or not a string
    """
    if not isinstance(raw, dict):
        raise RecordError(f"Prediction record must be an object, got {type(raw).__name__}")

    model_id = raw.get("model_id")
    horizon = raw.get("horizon")
    if not isinstance(model_id, str) or not model_id or not isinstance(horizon, str) or not horizon:
        raise RecordError(f"Prediction record lacks model_id/horizon: {raw}")

    try:
        jsonschema.validate(raw, PREDICTION_SCHEMA)
    except jsonschema.ValidationError as e:
        logger.warning(f"Malformed prediction from {model_id} on {horizon}: {e.message}")
        return MissingForecast(model_id, horizon, f"malformed_record: {e.message}")

    if "probability" not in raw or raw["probability"] is None:
        return MissingForecast(model_id, horizon, "no_probability")

    probability = raw["probability"]
    if not is_valid_probability(probability):
        logger.warning(f"Invalid probability from {model_id} on {horizon}: {probability}")
        return MissingForecast(model_id, horizon, "invalid_probability")

    return Forecast(
        model_id=model_id,
        horizon=horizon,
        probability=float(probability),
        confidence=raw.get("confidence"),
        candles_back=raw.get("candles_back"),
    )


def parse_label_record(raw: Dict[str, Any], benign_label: bool = True) -> LabelRecord:
    """
    Validate a raw label dict.

    A null label means the resolver had no forward data; it resolves to
    benign_label with data_missing=True.

    Args:
        raw: {horizon, label, first_resolution_at?}
        benign_label: Outcome assumed when data is missing

    Returns:
        LabelRecord

    Raises:
        RecordError: If the record is malformed
    """
    try:
        jsonschema.validate(raw, LABEL_SCHEMA)
    except jsonschema.ValidationError as e:
        raise RecordError(f"Malformed label record: {e.message}")

    first_resolution_at = None
    if raw.get("first_resolution_at"):
        try:
            first_resolution_at = parse_timestamp(raw["first_resolution_at"])
        except ValueError as e:
            raise RecordError(f"Bad first_resolution_at for {raw['horizon']}: {e}")

    if raw["label"] is None:
        return LabelRecord(raw["horizon"], benign_label, None, data_missing=True)

    return LabelRecord(raw["horizon"], raw["label"], first_resolution_at, data_missing=False)
