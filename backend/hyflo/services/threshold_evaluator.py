"""Threshold classification for flow readings.

One evaluator is used by the submit/validate workflow, by the entry-form
preview endpoint and for the ``alert_level`` stored on each reading. All
functions are pure: identical inputs always produce identical results, which
keeps audit replays reproducible.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from ..domain import INSTRUMENT_LIMITS, MEASUREMENT_FIELDS, AlertLevel, FlowThreshold, ParameterBounds

SOURCE_THRESHOLD = "threshold"
SOURCE_INSTRUMENT = "instrument"


@dataclass(frozen=True)
class ParameterEvaluation:
    parameter: str
    value: float
    level: AlertLevel
    position: float | None
    source: str
    min: float | None
    max: float | None
    band: float = 0.0
    band_clamped: bool = False


@dataclass(frozen=True)
class ReadingEvaluation:
    level: AlertLevel
    parameters: tuple[ParameterEvaluation, ...]
    threshold_id: int | None = None

    @property
    def is_breach(self) -> bool:
        return self.level is AlertLevel.BREACH

    def parameters_at(self, level: AlertLevel) -> list[str]:
        return [item.parameter for item in self.parameters if item.level is level]


def gauge_position(*, value: float, low: float, high: float) -> float:
    """Percent location of value between low and high, clamped to [0, 100]."""
    span = high - low
    if span <= 0:
        if value < low:
            return 0.0
        if value > high:
            return 100.0
        return 50.0
    percent = (value - low) / span * 100.0
    return max(0.0, min(100.0, percent))


def warning_band(*, low: float, high: float, tolerance_percent: float) -> tuple[float, bool]:
    """Return (band, clamped).

    The band is clamped to half the span when a tolerance above 50 % would
    otherwise leave no Normal zone at all.
    """
    span = high - low
    band = span * max(tolerance_percent, 0.0) / 100.0
    half_span = span / 2.0
    if band > half_span:
        return half_span, True
    return band, False


def classify(*, value: float, low: float, high: float, tolerance_percent: float) -> tuple[AlertLevel, float, bool]:
    band, clamped = warning_band(low=low, high=high, tolerance_percent=tolerance_percent)
    if value < low or value > high:
        return AlertLevel.BREACH, band, clamped
    if clamped:
        # Only the exact midpoint stays Normal.
        near_limit = value < low + band or value > high - band
    else:
        near_limit = value <= low + band or value >= high - band
    return (AlertLevel.WARNING if near_limit else AlertLevel.NORMAL), band, clamped


def classify_instrument(*, parameter: str, value: float) -> AlertLevel:
    low, high = INSTRUMENT_LIMITS.get(parameter, (None, None))
    if low is not None and value < low:
        return AlertLevel.BREACH
    if high is not None and value > high:
        return AlertLevel.BREACH
    return AlertLevel.NORMAL


def evaluate_measurement(
    *,
    parameter: str,
    value: float,
    bounds: ParameterBounds | None,
    tolerance_percent: float = 0.0,
) -> ParameterEvaluation:
    """Classify one measured value against configured bounds.

    Missing or inverted bounds degrade to the instrument range for the
    parameter: Breach outside it, Normal inside it, no warning band.
    """
    if bounds is None or bounds.min > bounds.max:
        low, high = INSTRUMENT_LIMITS.get(parameter, (None, None))
        position = None
        if low is not None and high is not None:
            position = gauge_position(value=value, low=low, high=high)
        return ParameterEvaluation(
            parameter=parameter,
            value=value,
            level=classify_instrument(parameter=parameter, value=value),
            position=position,
            source=SOURCE_INSTRUMENT,
            min=low,
            max=high,
        )

    level, band, clamped = classify(
        value=value,
        low=bounds.min,
        high=bounds.max,
        tolerance_percent=tolerance_percent,
    )
    return ParameterEvaluation(
        parameter=parameter,
        value=value,
        level=level,
        position=gauge_position(value=value, low=bounds.min, high=bounds.max),
        source=SOURCE_THRESHOLD,
        min=bounds.min,
        max=bounds.max,
        band=band,
        band_clamped=clamped,
    )


def aggregate_level(levels: list[AlertLevel]) -> AlertLevel:
    """Highest severity wins; no levels means Normal."""
    if not levels:
        return AlertLevel.NORMAL
    return max(levels, key=lambda level: level.rank)


def evaluate_reading(
    measurements: Mapping[str, float | None],
    threshold: FlowThreshold | None,
) -> ReadingEvaluation:
    """Evaluate every present measurement; absent values are skipped."""
    applicable = threshold if threshold is not None and threshold.active else None
    tolerance = float(applicable.alert_tolerance) if applicable is not None else 0.0

    results: list[ParameterEvaluation] = []
    for parameter in MEASUREMENT_FIELDS:
        value = measurements.get(parameter)
        if value is None:
            continue
        bounds = applicable.bounds_for(parameter) if applicable is not None else None
        results.append(
            evaluate_measurement(
                parameter=parameter,
                value=float(value),
                bounds=bounds,
                tolerance_percent=tolerance,
            )
        )

    return ReadingEvaluation(
        level=aggregate_level([item.level for item in results]),
        parameters=tuple(results),
        threshold_id=applicable.id if applicable is not None else None,
    )
