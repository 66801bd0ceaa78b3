"""
Merit ranking read model.
"""

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..config import EngineSettings
from ..core.entities import Enrollment
from ..core.enums import MeritBand, PeriodState
from ..core.exceptions import NotFoundError
from ..core.scoring import ZERO, to_decimal
from ..persistence.repositories import RepositoryRegistry

CENT = Decimal("0.01")


def credit_weighted_average(pairs: Iterable[Tuple[Any, int]]) -> Optional[Decimal]:
    """Average of ``(grade, credits)`` pairs weighted by credits, to 2 places."""
    total = ZERO
    credits = 0
    for grade, weight in pairs:
        total += to_decimal(grade) * weight
        credits += weight
    if not credits:
        return None
    return (total / credits).quantize(CENT, rounding=ROUND_HALF_UP)


def merit_band(position: int, population: int) -> MeritBand:
    if population <= 0:
        return MeritBand.NONE
    if position <= math.ceil(population / 10):
        return MeritBand.UPPER_TENTH
    if position <= math.ceil(population / 5):
        return MeritBand.UPPER_FIFTH
    if position <= math.ceil(population / 3):
        return MeritBand.UPPER_THIRD
    return MeritBand.NONE


@dataclass
class MeritEntry:
    student_id: str
    student_code: str
    full_name: str
    current_cycle: int
    credits_taken: int
    credits_passed: int
    period_average: Decimal
    cumulative_average: Optional[Decimal]
    position: int = 0
    band: MeritBand = MeritBand.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'student_id': self.student_id,
            'student_code': self.student_code,
            'full_name': self.full_name,
            'current_cycle': self.current_cycle,
            'credits_taken': self.credits_taken,
            'credits_passed': self.credits_passed,
            'period_average': str(self.period_average),
            'cumulative_average': str(self.cumulative_average) if self.cumulative_average is not None else None,
            'position': self.position,
            'band': self.band.value
        }


class MeritRanking:
    """Ranks the students of a period by credit-weighted average grade.

    Closed periods use the frozen final grades. While a period is open the
    ledger's rounded grade is used for enrollments that are fully graded.
    Tied averages share a position and the next position is skipped.
    """

    def __init__(self, repositories: RepositoryRegistry, ledger, settings: Optional[EngineSettings] = None):
        self._repos = repositories
        self._ledger = ledger
        self._settings = settings or EngineSettings()

    def rank_period(self, period_id: str) -> List[MeritEntry]:
        period = self._repos.periods.find_by_id(period_id)
        if period is None:
            raise NotFoundError(f"Period {period_id} not found", details={'period_id': period_id})

        graded: Dict[str, List[Tuple[int, int]]] = {}
        for enrollment in self._repos.enrollments.for_period(period_id):
            if enrollment.is_withdrawn:
                continue
            grade = self._grade_of(enrollment, live=period.state != PeriodState.CLOSED)
            if grade is None:
                continue
            graded.setdefault(enrollment.student_id, []).append((grade, self._credits(enrollment.course_id)))

        entries = []
        for student_id, pairs in graded.items():
            student = self._repos.students.find_by_id(student_id)
            if student is None:
                continue
            average = credit_weighted_average(pairs)
            if average is None:
                average = credit_weighted_average((grade, 1) for grade, _ in pairs)
            entries.append(MeritEntry(
                student_id=student_id,
                student_code=student.code,
                full_name=student.full_name,
                current_cycle=student.current_cycle,
                credits_taken=sum(credits for _, credits in pairs),
                credits_passed=sum(credits for grade, credits in pairs
                                   if grade >= self._settings.pass_threshold_rounded),
                period_average=average,
                cumulative_average=self._cumulative_average(student_id)
            ))

        entries.sort(key=lambda e: (-e.period_average, e.student_code))
        population = len(entries)
        for index, entry in enumerate(entries):
            if index and entry.period_average == entries[index - 1].period_average:
                entry.position = entries[index - 1].position
            else:
                entry.position = index + 1
            entry.band = merit_band(entry.position, population)
        return entries

    def student_standing(self, student_id: str, period_id: str) -> Optional[MeritEntry]:
        for entry in self.rank_period(period_id):
            if entry.student_id == student_id:
                return entry
        return None

    def _grade_of(self, enrollment: Enrollment, live: bool) -> Optional[int]:
        if enrollment.final_grade is not None or not live:
            return enrollment.final_grade
        return self._ledger.rounded_final_grade(enrollment.id)

    def _credits(self, course_id: str) -> int:
        course = self._repos.courses.find_by_id(course_id)
        return course.credits if course else 0

    def _cumulative_average(self, student_id: str) -> Optional[Decimal]:
        closed = {p.id for p in self._repos.periods.query_by(lambda p: p.state == PeriodState.CLOSED)}
        return credit_weighted_average(
            (e.final_grade, self._credits(e.course_id))
            for e in self._repos.enrollments.for_student(student_id)
            if e.period_id in closed and not e.is_withdrawn and e.final_grade is not None
        )
