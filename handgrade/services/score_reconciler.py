"""
Score reconciliation.

The model reports both a final score and a list of itemized deductions. It
is more reliable at itemizing than at arithmetic, so when deductions are
present, 100 minus their sum wins over the self-reported score. The result
is always a multiple of 10 in [0, 100], or None when there is nothing to
go on.
"""
import math
from typing import Iterable, Optional


def _to_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().rstrip('%'))
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def normalize_score(raw) -> Optional[float]:
    """Scale fractional scores in (0, 1] by 100, otherwise clamp to [0, 100]."""
    number = _to_number(raw)
    if number is None:
        return None
    if 0 < number <= 1:
        return number * 100
    return clamp(number)


def total_deduction(deduction_details: Optional[Iterable]) -> float:
    """Sum deduction_percentage over all entries; non-numeric entries count as 0."""
    total = 0.0
    for detail in deduction_details or []:
        if isinstance(detail, dict):
            value = detail.get("deduction_percentage")
        else:
            value = getattr(detail, "deduction_percentage", None)
        number = _to_number(value)
        if number is not None:
            total += number
    return total


def round_to_ten(value: float) -> int:
    """Nearest multiple of 10, halves rounding up (85 -> 90)."""
    return int(math.floor(value / 10 + 0.5)) * 10


def reconcile(raw_score, deduction_details=None) -> Optional[int]:
    """
    Compute the canonical score for a graded label.

    Args:
        raw_score: The model's self-reported score (any type)
        deduction_details: List of {reason, deduction_percentage} entries

    Returns:
        A multiple of 10 in [0, 100], or None when neither a valid raw score
        nor any deductions were present
    """
    deducted = total_deduction(deduction_details)
    if deducted > 0:
        return round_to_ten(clamp(100 - deducted))

    normalized = normalize_score(raw_score)
    if normalized is None:
        return None
    return round_to_ten(clamp(normalized))
