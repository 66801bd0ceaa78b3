"""
Weighted score computation.

Scores live on a 0-20 scale and weights are percentages. A weighted sum is
``sum(value * weight / 100)`` over whatever has been recorded so far. It is
not normalised by the weight present, so a partially graded
enrollment only carries the contribution of the evaluations already taken.
"""

import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Iterable, List, Optional, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Raw threshold for statistics, rounded threshold for grade reports and period close.
RAW_PASS_THRESHOLD = Decimal("10.5")
ROUNDED_PASS_THRESHOLD = 11


def to_decimal(value: Any) -> Decimal:
    """Convert ints, floats and strings to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Booleans are not numeric scores")
    try:
        if isinstance(value, float):
            return Decimal(repr(value))
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise TypeError(f"Not a numeric value: {value!r}") from e


def round_half_away_from_zero(value: Decimal) -> int:
    """Round to the nearest integer, with .5 going away from zero."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_label(label: str) -> str:
    """Comparison key for evaluation labels: trimmed, casefolded, accents stripped."""
    decomposed = unicodedata.normalize("NFD", label.strip())
    stripped = "".join(c for c in decomposed if unicodedata.category(c) != "Mn")
    return " ".join(stripped.casefold().split())


@dataclass(frozen=True)
class ScoreItem:
    """One (label, weight, value) triple."""
    label: str
    weight_percent: Decimal
    value: Decimal

    @property
    def contribution(self) -> Decimal:
        return self.value * self.weight_percent / HUNDRED


@dataclass(frozen=True)
class WeightedScoreSet:
    """Immutable set of weighted scores with grade accessors."""
    items: Tuple[ScoreItem, ...] = field(default_factory=tuple)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, Any, Any]]) -> "WeightedScoreSet":
        """Build from ``(label, weight_percent, value)`` tuples."""
        return cls(tuple(
            ScoreItem(label, to_decimal(weight), to_decimal(value))
            for label, weight, value in pairs
        ))

    @classmethod
    def from_entries(cls, entries: Iterable[Any]) -> "WeightedScoreSet":
        """Build from grade entries exposing label, weight and value."""
        return cls(tuple(
            ScoreItem(entry.evaluation_label, entry.weight_percent, entry.value)
            for entry in entries
        ))

    @property
    def weighted_sum(self) -> Decimal:
        total = ZERO
        for item in self.items:
            total += item.contribution
        return total

    @property
    def recorded_weight(self) -> Decimal:
        total = ZERO
        for item in self.items:
            total += item.weight_percent
        return total

    @property
    def labels(self) -> List[str]:
        return [item.label for item in self.items]

    def rounded_final_grade(self) -> Optional[int]:
        """Rounded weighted sum, or None when nothing contributes yet."""
        raw = self.weighted_sum
        if raw == ZERO:
            return None
        return round_half_away_from_zero(raw)

    def covers(self, required_labels: Iterable[str]) -> bool:
        """Whether every required label has a recorded score."""
        present = {normalize_label(label) for label in self.labels}
        return all(normalize_label(label) in present for label in required_labels)

    def missing(self, required_labels: Iterable[str]) -> List[str]:
        present = {normalize_label(label) for label in self.labels}
        return [label for label in required_labels if normalize_label(label) not in present]

    def passes_raw(self, threshold: Decimal = RAW_PASS_THRESHOLD) -> bool:
        """Pass rule on the unrounded weighted sum, used by statistics."""
        return self.weighted_sum >= to_decimal(threshold)

    def passes_rounded(self, threshold: int = ROUNDED_PASS_THRESHOLD) -> bool:
        """Pass rule on the rounded grade, used by grade reports and period close."""
        grade = self.rounded_final_grade()
        return grade is not None and grade >= threshold
