"""
Checks that returned rows carry the fields each chart type needs.

Only the property names of the first row are inspected; downstream
projections are assumed to be homogeneous.  Empty results, non-array
payloads and ``table`` results always pass.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from whatcar.copilot.result_type import ResultType

NUMERIC_HINTS = ("units", "sold", "value", "count", "total")
LABEL_HINTS = ("vehicle", "make", "model", "fuel", "name")
TIME_HINTS = ("year", "quarter", "date", "month")
CATEGORY_HINTS = ("vehicle", "make", "model", "fuel", "type")


@dataclass(frozen=True)
class ValidationOutcome:
    is_valid: bool
    error_message: str | None = None

    @classmethod
    def success(cls) -> "ValidationOutcome":
        return cls(True)

    @classmethod
    def failure(cls, message: str) -> "ValidationOutcome":
        return cls(False, message)


def extract_rows(data: Any) -> list | None:
    """Return the row array of a payload, or ``None`` when there is none."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("value"), list):
        return data["value"]
    return None


def _has_field(properties: list[str], hints: tuple[str, ...]) -> bool:
    return any(h in p.lower() for p in properties for h in hints)


def _validate_ranking(properties: list[str]) -> ValidationOutcome:
    if not _has_field(properties, NUMERIC_HINTS):
        return ValidationOutcome.failure(
            "Ranking chart requires a numeric field (e.g., UnitsSold, TotalValue). Add it to $select."
        )
    if not _has_field(properties, LABEL_HINTS):
        return ValidationOutcome.failure(
            "Ranking chart requires a label field (e.g., Make, Model, Fuel). Add it to $expand or $select."
        )
    return ValidationOutcome.success()


def _validate_trend(properties: list[str]) -> ValidationOutcome:
    if not _has_field(properties, TIME_HINTS):
        return ValidationOutcome.failure(
            "Trend chart requires a time field (e.g., Year, Quarter, Date). Add it to $select."
        )
    if not _has_field(properties, NUMERIC_HINTS):
        return ValidationOutcome.failure(
            "Trend chart requires a numeric field (e.g., UnitsSold). Add it to $select."
        )
    return ValidationOutcome.success()


def _validate_comparison(properties: list[str]) -> ValidationOutcome:
    if not _has_field(properties, CATEGORY_HINTS):
        return ValidationOutcome.failure(
            "Comparison chart requires a category field (e.g., Make, Fuel). Add it to $expand or $select."
        )
    if not _has_field(properties, NUMERIC_HINTS):
        return ValidationOutcome.failure(
            "Comparison chart requires a numeric field (e.g., UnitsSold). Add it to $select."
        )
    return ValidationOutcome.success()


_VALIDATORS: dict[str, Callable[[list[str]], ValidationOutcome]] = {
    "ranking": _validate_ranking,
    "trend": _validate_trend,
    "comparison": _validate_comparison,
}


def validate_result(result_type: ResultType | str, data: Any) -> ValidationOutcome:
    """Validate *data* against the minimum field contract of *result_type*."""
    rows = extract_rows(data)
    if not rows:
        return ValidationOutcome.success()

    first = rows[0]
    # A scalar row has no property names and therefore no usable fields.
    properties = [str(k) for k in first] if isinstance(first, dict) else []

    name = result_type.value if isinstance(result_type, ResultType) else str(result_type)
    validator = _VALIDATORS.get(name.lower())
    if validator is None:
        return ValidationOutcome.success()
    return validator(properties)
