"""Threshold configuration invariants."""

from __future__ import annotations

import math

from ..domain import INSTRUMENT_LIMITS, MEASUREMENT_FIELDS, MEASUREMENT_UNITS, FlowThreshold
from ..domain_errors import ValidationError


MAX_ALERT_TOLERANCE = 50.0


def ensure_tolerance_in_range(tolerance: float) -> None:
    if not math.isfinite(tolerance) or tolerance < 0 or tolerance > MAX_ALERT_TOLERANCE:
        raise ValidationError(
            f"Alert tolerance must be between 0 and {MAX_ALERT_TOLERANCE:g} percent",
            code="THRESHOLD_TOLERANCE_INVALID",
            details={"fields": {"alert_tolerance": "out of range"}},
        )


def validate_threshold_config(threshold: FlowThreshold) -> None:
    """Reject configs the evaluator would otherwise have to degrade."""
    ensure_tolerance_in_range(threshold.alert_tolerance)

    errors: dict[str, str] = {}
    for name in MEASUREMENT_FIELDS:
        low = getattr(threshold, f"{name}_min")
        high = getattr(threshold, f"{name}_max")
        if any(bound is not None and not math.isfinite(bound) for bound in (low, high)):
            errors[name] = "bounds must be finite numbers"
            continue
        if low is not None and high is not None and low >= high:
            errors[name] = "minimum must be lower than maximum"
            continue

        limit_low, limit_high = INSTRUMENT_LIMITS[name]
        unit = MEASUREMENT_UNITS[name]
        for bound in (low, high):
            if bound is None:
                continue
            if limit_low is not None and bound < limit_low:
                errors[name] = f"bounds must be at least {limit_low:g} {unit}"
            elif limit_high is not None and bound > limit_high:
                errors[name] = f"bounds must be at most {limit_high:g} {unit}"

    if errors:
        raise ValidationError(
            "Invalid threshold configuration",
            code="THRESHOLD_CONFIG_INVALID",
            details={"fields": errors},
        )
