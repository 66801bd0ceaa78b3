"""
The implicit seven-slot scheme used by courses that were never configured.

Courses graded before structured schemes existed stored free-text labels.
The alias table lists the spellings seen for each slot so that the first
explicit configuration of a course can fold those records into its new labels.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple

from .scoring import normalize_label


@dataclass(frozen=True)
class DefaultSlot:
    """One position of the default scheme."""
    label: str
    weight_percent: Decimal
    display_order: int
    aliases: Tuple[str, ...]

    def matches(self, label: str) -> bool:
        key = normalize_label(label)
        return key == normalize_label(self.label) or key in {normalize_label(a) for a in self.aliases}


FINAL_EXAM_LABEL = "Final"

DEFAULT_EVALUATION_SCHEME: Tuple[DefaultSlot, ...] = (
    DefaultSlot("Midterm1", Decimal("10"), 1,
                ("Midterm 1", "Parcial 1", "EP1", "Examen Parcial 1")),
    DefaultSlot("Midterm2", Decimal("10"), 2,
                ("Midterm 2", "Parcial 2", "EP2", "Examen Parcial 2")),
    DefaultSlot("Labs", Decimal("20"), 3,
                ("Lab", "Practicas", "Practica", "PR")),
    DefaultSlot("Midpoint", Decimal("20"), 4,
                ("Medio Curso", "MedioCurso", "MC")),
    DefaultSlot("Final", Decimal("20"), 5,
                ("Final Exam", "Examen Final", "ExamenFinal", "EF")),
    DefaultSlot("Attitude", Decimal("5"), 6,
                ("Actitud", "EA")),
    DefaultSlot("Assignments", Decimal("15"), 7,
                ("Trabajos", "Trabajo encargado", "TE", "T")),
)


def default_slot_for(label: str) -> Optional[DefaultSlot]:
    """Return the default slot a legacy label belongs to, if any."""
    for slot in DEFAULT_EVALUATION_SCHEME:
        if slot.matches(label):
            return slot
    return None


def default_weights() -> Dict[str, Decimal]:
    return {slot.label: slot.weight_percent for slot in DEFAULT_EVALUATION_SCHEME}


def final_exam_labels() -> Tuple[str, ...]:
    """The final exam slot's label followed by its legacy spellings."""
    slot = default_slot_for(FINAL_EXAM_LABEL)
    return (slot.label,) + slot.aliases
