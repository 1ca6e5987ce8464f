"""
Observation normalizer: loosely typed form or device input to canonical units.

Never raises. Unparsable or empty values become absent (not zero) and
out-of-range values are clamped, which suppresses slider jitter and device
spikes instead of rejecting the whole observation set.
"""

from collections.abc import Mapping
from typing import Any

from edflow.domain.models import CanonicalObservation, OxygenSupport

# Plausible physiological ranges, inclusive
PLAUSIBLE_RANGES: dict[str, tuple[float, float]] = {
    "rr": (4, 60),
    "hr": (20, 220),
    "sbp": (50, 250),
    "spo2": (50, 100),
    "temp": (30, 43),
}

_TRUTHY = {"1", "true", "yes", "on", "y"}

# Raw keys used by older entry forms
_KEY_ALIASES = {
    "tempUnit": "temp_unit",
    "o2Device": "o2_device",
    "o2Lpm": "o2_lpm",
    "onOxygen": "on_oxygen",
}


def to_number(value: Any) -> float | None:
    """Coerce to float; empty, missing or unparsable input is absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    # NaN and infinities are device noise, not readings
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def clamp(value: float | None, low: float, high: float) -> float | None:
    if value is None:
        return None
    return min(high, max(low, value))


def fahrenheit_to_celsius(value: float) -> float:
    return round((value - 32) * 5 / 9, 1)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize(raw: Mapping[str, Any]) -> CanonicalObservation:
    """Convert a raw observation mapping into a CanonicalObservation."""
    data = {_KEY_ALIASES.get(k, k): v for k, v in raw.items()}

    values = {name: to_number(data.get(name)) for name in PLAUSIBLE_RANGES}

    unit = str(data.get("temp_unit") or "C").strip().upper()
    if unit == "F" and values["temp"] is not None:
        values["temp"] = fahrenheit_to_celsius(values["temp"])

    clamped = {
        name: clamp(value, *PLAUSIBLE_RANGES[name]) for name, value in values.items()
    }

    oxygen = OxygenSupport(
        device=_optional_text(data.get("o2_device")),
        lpm=to_number(data.get("o2_lpm")),
        on_oxygen=_to_bool(data.get("on_oxygen")),
    )
    source = "device" if str(data.get("source") or "").strip().lower() == "device" else "obs"

    return CanonicalObservation(
        **clamped,
        loc=_optional_text(data.get("loc")),
        oxygen=oxygen,
        source=source,
    )
