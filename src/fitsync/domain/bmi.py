from __future__ import annotations

from typing import Any, Mapping

from fitsync.errors import ValidationFailure

_LB_TO_KG = 0.453592
_IN_TO_M = 0.0254

# Upper bounds (exclusive) of the WHO bands.
_CATEGORY_BANDS: tuple[tuple[float, str], ...] = (
    (18.5, "underweight"),
    (25.0, "normal_weight"),
    (30.0, "overweight"),
    (35.0, "obese_class_1"),
    (40.0, "obese_class_2"),
)


def calculate_bmi(weight: float, height: float, units: str) -> float:
    """Return BMI rounded to one decimal.

    Metric input is kilograms and centimetres; imperial is pounds and inches.
    """

    if units == "imperial":
        weight_kg = weight * _LB_TO_KG
        height_m = height * _IN_TO_M
    elif units == "metric":
        weight_kg = weight
        height_m = height / 100
    else:
        raise ValidationFailure(f"Unknown units: {units!r}", field="units")
    if height_m <= 0:
        raise ValidationFailure("Height must be positive", field="height")
    return round(weight_kg / (height_m * height_m), 1)


def bmi_category(bmi: float) -> str:
    for upper, label in _CATEGORY_BANDS:
        if bmi < upper:
            return label
    return "obese_class_3"


def derive_bmi_fields(record: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``bmi`` and ``category`` for a record carrying body measurements."""

    weight = record.get("weight")
    height = record.get("height")
    units = record.get("units")
    if weight is None or height is None or units is None:
        return {}
    bmi = calculate_bmi(weight, height, units)
    return {"bmi": bmi, "category": bmi_category(bmi)}


__all__ = ["bmi_category", "calculate_bmi", "derive_bmi_fields"]
