"""
Academic period lifecycle: Planned -> Active -> Closed.

At most one period is active. Opening a period closes the active one and
promotes the students graded in the last period whose outcomes have not yet
been applied; closing freezes every enrollment's final grade.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from ..config import EngineSettings
from ..core.entities import AcademicPeriod, Enrollment
from ..core.enums import NotificationKind, PeriodState
from ..core.exceptions import (
    IncompleteGradingError, InvalidStateTransition, NotFoundError, ValidationError
)
from ..persistence.repositories import RepositoryRegistry
from .concurrency_manager import PERIOD_LIFECYCLE_RESOURCE, ConcurrencyManager, LockType, current_holder
from .ledger_service import LedgerService
from .notification_service import NotificationService
from .ranking import credit_weighted_average

logger = logging.getLogger(__name__)


class PeriodCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    year: int = Field(..., ge=1900, le=2200)
    cycle_label: str = Field(..., min_length=1, max_length=20)
    start_date: date
    end_date: date

    @model_validator(mode='after')
    def _dates_in_order(self) -> "PeriodCreate":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        return self


@dataclass
class IncompleteEnrollment:
    enrollment_id: str
    student_id: str
    course_id: str
    missing_labels: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enrollment_id': self.enrollment_id,
            'student_id': self.student_id,
            'course_id': self.course_id,
            'missing_labels': list(self.missing_labels)
        }


@dataclass
class ClosureValidation:
    """Enrollments of a period still missing required grade entries."""
    period_id: str
    checked: int = 0
    incomplete: List[IncompleteEnrollment] = field(default_factory=list)

    @property
    def closable(self) -> bool:
        return not self.incomplete


@dataclass
class PeriodClosingSummary:
    """Outcome tallies of a period close."""
    period_id: str
    period_name: str
    closed_at: Optional[datetime]
    final_grades: Dict[str, Optional[int]] = field(default_factory=dict)
    courses_passed: int = 0
    courses_failed: int = 0
    ungraded: int = 0
    students_in_good_standing: int = 0
    students_retained: int = 0
    accepted_incomplete: List[IncompleteEnrollment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'period_id': self.period_id,
            'period_name': self.period_name,
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
            'enrollments': len(self.final_grades),
            'courses_passed': self.courses_passed,
            'courses_failed': self.courses_failed,
            'ungraded': self.ungraded,
            'students_in_good_standing': self.students_in_good_standing,
            'students_retained': self.students_retained,
            'accepted_incomplete': [i.to_dict() for i in self.accepted_incomplete]
        }


@dataclass
class PeriodOpeningResult:
    """Outcome of opening a period, including the promotion sweep."""
    period_id: str
    previous_closing: Optional[PeriodClosingSummary] = None
    promotion_source_id: Optional[str] = None
    promotions: Dict[str, int] = field(default_factory=dict)
    at_max_cycle: List[str] = field(default_factory=list)

    @property
    def promoted_count(self) -> int:
        return len(self.promotions)

    @property
    def cycle_histogram(self) -> Dict[int, int]:
        return dict(sorted(Counter(self.promotions.values()).items()))


class PeriodService:
    """State machine over academic periods."""

    def __init__(self, repositories: RepositoryRegistry, concurrency_manager: ConcurrencyManager,
                 ledger: LedgerService, notifications: NotificationService,
                 settings: Optional[EngineSettings] = None):
        self._repos = repositories
        self._concurrency_manager = concurrency_manager
        self._ledger = ledger
        self._notifications = notifications
        self._settings = settings or EngineSettings()

    def _lifecycle_lock(self):
        return self._concurrency_manager.lock(
            PERIOD_LIFECYCLE_RESOURCE, LockType.WRITE, current_holder("period_service"),
            wait=self._settings.lock_wait_timeout
        )

    def create_period(self, name: str, year: int, cycle_label: str,
                      start_date: date, end_date: date) -> AcademicPeriod:
        try:
            data = PeriodCreate(name=name, year=year, cycle_label=cycle_label,
                                start_date=start_date, end_date=end_date)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid academic period",
                details={'errors': [
                    {'field': '.'.join(str(p) for p in err['loc']), 'message': err['msg']}
                    for err in e.errors()
                ]}
            ) from e

        with self._repos.transaction():
            if self._repos.periods.find_by_name(data.name) is not None:
                raise ValidationError(f"A period named {data.name} already exists", details={'name': data.name})
            period = AcademicPeriod(data.name.strip(), data.year, data.cycle_label,
                                    data.start_date, data.end_date)
            self._repos.periods.save(period)
        logger.info("Created period %s", period.name)
        return period

    def get_period(self, period_id: str) -> AcademicPeriod:
        period = self._repos.periods.find_by_id(period_id)
        if period is None:
            raise NotFoundError(f"Period {period_id} not found", details={'period_id': period_id})
        return period

    def active_period(self) -> Optional[AcademicPeriod]:
        active = self._repos.periods.find_active()
        return active[0] if active else None

    def list_periods(self) -> List[AcademicPeriod]:
        periods = self._repos.periods.find_all()
        periods.sort(key=lambda p: (p.start_date, p.name))
        return periods

    def open_period(self, period_id: str) -> PeriodOpeningResult:
        """Activate a planned period.

        Any active period is closed first, with the same rules as ``close_period``.
        Students graded in the last unapplied closed period then move up one cycle.
        """
        closed_summary = None
        with self._lifecycle_lock():
            with self._repos.transaction():
                target = self.get_period(period_id)
                if target.state != PeriodState.PLANNED:
                    raise InvalidStateTransition(
                        f"Period {target.name} is {target.state.value}; only planned periods can be opened",
                        details={'period_id': period_id, 'state': target.state.value}
                    )

                for active in self._repos.periods.find_active():
                    closed_summary = self._close(active, accept_incomplete=False)

                result = PeriodOpeningResult(period_id=period_id, previous_closing=closed_summary)
                source = self._promotion_source()
                if source is not None:
                    result.promotion_source_id = source.id
                    plan, capped = self._promotion_plan(source)
                    self._apply_promotions(plan)
                    source.mark_promotion_applied()
                    self._repos.periods.save(source)
                    result.promotions = plan
                    result.at_max_cycle = capped

                target.mark_active()
                self._repos.periods.save(target)

        logger.info("Opened period %s; promoted %d students", target.name, result.promoted_count)
        if closed_summary is not None:
            self._announce_close(closed_summary)
        self._notifications.notify(
            NotificationKind.PERIOD_OPENED,
            {'period_id': target.id, 'name': target.name, 'promoted': result.promoted_count}
        )
        return result

    def validate_closable(self, period_id: str) -> ClosureValidation:
        """List the non-withdrawn enrollments lacking an entry for an active evaluation type."""
        self.get_period(period_id)
        validation = ClosureValidation(period_id=period_id)
        for enrollment in self._repos.enrollments.for_period(period_id):
            if enrollment.is_withdrawn:
                continue
            validation.checked += 1
            missing = self._ledger.missing_labels(enrollment.id)
            if missing:
                validation.incomplete.append(IncompleteEnrollment(
                    enrollment.id, enrollment.student_id, enrollment.course_id, missing
                ))
        return validation

    def close_period(self, period_id: str, accept_incomplete: bool = False) -> PeriodClosingSummary:
        """Freeze final grades and mark an active period closed."""
        with self._lifecycle_lock():
            with self._repos.transaction():
                period = self.get_period(period_id)
                if period.state != PeriodState.ACTIVE:
                    raise InvalidStateTransition(
                        f"Period {period.name} is {period.state.value}; only the active period can be closed",
                        details={'period_id': period_id, 'state': period.state.value}
                    )
                summary = self._close(period, accept_incomplete)
        self._announce_close(summary)
        return summary

    def delete_period(self, period_id: str) -> bool:
        """Delete a period that owns no enrollments and is not active."""
        with self._lifecycle_lock():
            with self._repos.transaction():
                period = self.get_period(period_id)
                if period.state == PeriodState.ACTIVE:
                    raise InvalidStateTransition("The active period cannot be deleted",
                                                 details={'period_id': period_id})
                owned = len(self._repos.enrollments.for_period(period_id))
                if owned:
                    raise ValidationError(
                        f"Period {period.name} has {owned} enrollments and cannot be deleted",
                        details={'period_id': period_id, 'enrollments': owned}
                    )
                self._repos.periods.delete(period_id)
        logger.info("Deleted period %s", period.name)
        return True

    def _close(self, period: AcademicPeriod, accept_incomplete: bool) -> PeriodClosingSummary:
        validation = self.validate_closable(period.id)
        if not validation.closable and not accept_incomplete:
            raise IncompleteGradingError(
                f"{len(validation.incomplete)} enrollments of period {period.name} lack required grades",
                incomplete=[i.to_dict() for i in validation.incomplete],
                details={'period_id': period.id}
            )
        if validation.incomplete:
            logger.warning("Closing period %s with %d incomplete enrollments",
                           period.name, len(validation.incomplete))

        summary = PeriodClosingSummary(period_id=period.id, period_name=period.name, closed_at=None,
                                       accepted_incomplete=validation.incomplete)
        outcomes: Dict[str, List[bool]] = defaultdict(list)
        for enrollment in self._repos.enrollments.for_period(period.id):
            if enrollment.is_withdrawn:
                continue
            grade = self._ledger.score_set(enrollment.id).rounded_final_grade()
            enrollment.freeze_final_grade(grade)
            self._repos.enrollments.save(enrollment)
            summary.final_grades[enrollment.id] = grade
            if grade is None:
                summary.ungraded += 1
                continue
            passed = grade >= self._settings.pass_threshold_rounded
            outcomes[enrollment.student_id].append(passed)
            if passed:
                summary.courses_passed += 1
            else:
                summary.courses_failed += 1

        for results in outcomes.values():
            passed, failed = results.count(True), results.count(False)
            if failed == 0 or passed > failed:
                summary.students_in_good_standing += 1
            else:
                summary.students_retained += 1

        period.mark_closed()
        self._repos.periods.save(period)
        summary.closed_at = period.closed_at
        self._refresh_cumulative(outcomes.keys())
        logger.info("Closed period %s: %d passed, %d failed, %d ungraded",
                    period.name, summary.courses_passed, summary.courses_failed, summary.ungraded)
        return summary

    def _promotion_source(self) -> Optional[AcademicPeriod]:
        pending = self._repos.periods.query_by(
            lambda p: p.state == PeriodState.CLOSED and not p.promotion_applied
        )
        if not pending:
            return None
        return max(pending, key=lambda p: p.closed_at)

    def _promotion_plan(self, source: AcademicPeriod):
        """Compute every promotion before any write: ``{student_id: new_cycle}`` plus students at the cap."""
        eligible = {
            e.student_id for e in self._repos.enrollments.for_period(source.id)
            if not e.is_withdrawn and e.final_grade is not None
        }
        plan: Dict[str, int] = {}
        capped: List[str] = []
        for student_id in sorted(eligible):
            student = self._repos.students.find_by_id(student_id)
            if student is None:
                continue
            new_cycle = min(student.current_cycle + 1, self._settings.max_cycle)
            if new_cycle > student.current_cycle:
                plan[student_id] = new_cycle
            else:
                capped.append(student_id)
        return plan, capped

    def _apply_promotions(self, plan: Dict[str, int]) -> None:
        for student_id, new_cycle in plan.items():
            student = self._repos.students.find_by_id(student_id)
            student.advance_cycle(new_cycle)
            self._repos.students.save(student)

    def _refresh_cumulative(self, student_ids) -> None:
        """Recompute credits passed and credit-weighted average over every closed period."""
        closed = {p.id for p in self._repos.periods.query_by(lambda p: p.state == PeriodState.CLOSED)}
        for student_id in student_ids:
            student = self._repos.students.find_by_id(student_id)
            if student is None:
                continue
            graded: List[Enrollment] = [
                e for e in self._repos.enrollments.for_student(student_id)
                if e.period_id in closed and not e.is_withdrawn and e.final_grade is not None
            ]
            pairs = []
            credits_passed = 0
            for enrollment in graded:
                course = self._repos.courses.find_by_id(enrollment.course_id)
                credits = course.credits if course else 0
                pairs.append((enrollment.final_grade, credits))
                if enrollment.final_grade >= self._settings.pass_threshold_rounded:
                    credits_passed += credits
            student.update(cumulative_credits=credits_passed, cumulative_gpa=credit_weighted_average(pairs))
            self._repos.students.save(student)

    def _announce_close(self, summary: PeriodClosingSummary) -> None:
        self._notifications.notify(
            NotificationKind.PERIOD_CLOSED,
            {'period_id': summary.period_id, 'name': summary.period_name,
             'courses_passed': summary.courses_passed, 'courses_failed': summary.courses_failed}
        )
