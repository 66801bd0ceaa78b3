"""
Grade ledger: upserts of recorded scores per enrollment and the grade read models.

Final grades are computed when read. The only place a grade is stored is the
enrollment's ``final_grade``, frozen by the period lifecycle at close.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..config import EngineSettings
from ..core.entities import MAX_SPLIT_ITEMS, Enrollment, GradeEntry, SplitEvaluationItem, SubItemScore
from ..core.enums import NotificationKind, PeriodState
from ..core.exceptions import (
    AttendanceGateViolation, InvalidStateTransition, KardexException, NotFoundError, ValidationError
)
from ..core.scoring import ZERO, WeightedScoreSet
from ..persistence.repositories import RepositoryRegistry
from .concurrency_manager import (
    PERIOD_LIFECYCLE_RESOURCE, ConcurrencyManager, LockType, current_holder, enrollment_resource
)
from .eligibility import EligibilityGate
from .notification_service import NotificationService
from .scheme_service import EvaluationScheme, SchemeService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class ScoreSubmission(BaseModel):
    """A score submitted by an instructor for one evaluation label."""
    label: str = Field(..., min_length=1, max_length=100)
    value: Decimal
    weight_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator('label')
    @classmethod
    def _strip_label(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("label cannot be blank")
        return value


@dataclass
class LabelOutcome:
    """Outcome of one label of a batch submission."""
    label: str
    success: bool
    entry: Optional[GradeEntry] = None
    error: Optional[KardexException] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'success': self.success,
            'entry': self.entry.to_dict() if self.entry else None,
            'error': self.error.to_dict() if self.error else None
        }


@dataclass
class ScoreBatchResult:
    """Per-label outcomes of ``record_scores``."""
    enrollment_id: str
    outcomes: List[LabelOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(o.success for o in self.outcomes)

    @property
    def recorded(self) -> List[str]:
        return [o.label for o in self.outcomes if o.success]

    @property
    def rejected(self) -> Dict[str, KardexException]:
        return {o.label: o.error for o in self.outcomes if not o.success}


@dataclass
class SubScoreResult:
    """Outcome of recording one part of a split evaluation."""
    sub_score: SubItemScore
    scored_items: int
    total_items: int
    aggregate_entry: Optional[GradeEntry] = None

    @property
    def aggregate_written(self) -> bool:
        return self.aggregate_entry is not None


@dataclass
class FinalGradeReport:
    """Grade summary of one enrollment with both pass rules."""
    enrollment_id: str
    student_id: str
    course_id: str
    period_id: str
    weighted_sum: Decimal
    recorded_weight: Decimal
    is_complete: bool
    missing_labels: List[str]
    provisional_grade: Optional[int]
    rounded_final_grade: Optional[int]
    passes_rounded: bool
    passes_raw: bool
    frozen_final_grade: Optional[int] = None
    entries: List[GradeEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enrollment_id': self.enrollment_id,
            'student_id': self.student_id,
            'course_id': self.course_id,
            'period_id': self.period_id,
            'weighted_sum': str(self.weighted_sum),
            'recorded_weight': str(self.recorded_weight),
            'is_complete': self.is_complete,
            'missing_labels': list(self.missing_labels),
            'provisional_grade': self.provisional_grade,
            'rounded_final_grade': self.rounded_final_grade,
            'passes_rounded': self.passes_rounded,
            'passes_raw': self.passes_raw,
            'frozen_final_grade': self.frozen_final_grade,
            'entries': [e.to_dict() for e in self.entries]
        }


@dataclass
class CourseStatistics:
    course_id: str
    graded: int = 0
    passing: int = 0
    failing: int = 0
    total_weighted_sum: Decimal = ZERO

    @property
    def average(self) -> Optional[Decimal]:
        if not self.graded:
            return None
        return (self.total_weighted_sum / self.graded).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class PeriodStatistics:
    """Pass/fail counts of a period on the raw weighted sum."""
    period_id: str
    threshold: Decimal
    enrollments: int = 0
    withdrawn: int = 0
    graded: int = 0
    passing: int = 0
    failing: int = 0
    courses: Dict[str, CourseStatistics] = field(default_factory=dict)

    @property
    def pass_rate(self) -> float:
        return round(self.passing * 100.0 / self.graded, 2) if self.graded else 0.0


class LedgerService:
    """Records scores per enrollment and computes grades from them."""

    def __init__(self, repositories: RepositoryRegistry, concurrency_manager: ConcurrencyManager,
                 schemes: SchemeService, gate: EligibilityGate, notifications: NotificationService,
                 settings: Optional[EngineSettings] = None):
        self._repos = repositories
        self._concurrency_manager = concurrency_manager
        self._schemes = schemes
        self._gate = gate
        self._notifications = notifications
        self._settings = settings or EngineSettings()

    # Writes

    def record_score(self, enrollment_id: str, label: str, value: Any,
                     weight_percent: Any = None, notes: Optional[str] = None) -> GradeEntry:
        """Insert or overwrite the score of ``label`` for an enrollment."""
        submission = self._parse_submission(
            {'label': label, 'value': value, 'weight_percent': weight_percent, 'notes': notes}
        )
        enrollment = self._writable_enrollment(enrollment_id)
        self._gate.ensure_can_record(enrollment.student_id, enrollment.course_id, submission.label)

        with self._write_locks(enrollment_id):
            enrollment = self._writable_enrollment(enrollment_id)
            with self._repos.transaction():
                # scheme read inside the unit of work
                scheme = self._schemes.get_scheme(enrollment.course_id)
                label, weight = self._resolve_label(scheme, submission.label, submission.weight_percent)
                if self._repos.split_items.for_label(enrollment.course_id, label):
                    raise ValidationError(
                        f"'{label}' is split into parts, record each part with record_sub_score",
                        details={'label': label, 'course_id': enrollment.course_id}
                    )
                entry = self._upsert(enrollment_id, label, submission.value, weight, submission.notes)

        logger.info("Recorded %s = %s for enrollment %s", label, submission.value, enrollment_id)
        self._notifications.notify(
            NotificationKind.GRADE_RECORDED,
            {'enrollment_id': enrollment_id, 'course_id': enrollment.course_id,
             'label': label, 'value': str(entry.value)},
            recipient_id=enrollment.student_id
        )
        return entry

    def record_scores(self, enrollment_id: str,
                      scores: Union[Mapping[str, Any], Sequence[Union[ScoreSubmission, Dict[str, Any]]]],
                      notes: Optional[str] = None) -> ScoreBatchResult:
        """Record several labels; a rejected label does not stop the others."""
        if isinstance(scores, Mapping):
            items = [{'label': label, 'value': value, 'notes': notes} for label, value in scores.items()]
        else:
            items = [s.model_dump() if isinstance(s, ScoreSubmission) else dict(s) for s in scores]

        result = ScoreBatchResult(enrollment_id=enrollment_id)
        for item in items:
            label = str(item.get('label', ''))
            try:
                entry = self.record_score(
                    enrollment_id, label, item.get('value'),
                    weight_percent=item.get('weight_percent'),
                    notes=item.get('notes', notes)
                )
                result.outcomes.append(LabelOutcome(label=entry.evaluation_label, success=True, entry=entry))
            except (ValidationError, AttendanceGateViolation, InvalidStateTransition, NotFoundError) as e:
                result.outcomes.append(LabelOutcome(label=label, success=False, error=e))
        return result

    def register_sub_item(self, course_id: str, label: str, item_number: int, total_items: int,
                          due_date: Optional[date] = None,
                          individual_weight: Any = None) -> SplitEvaluationItem:
        """Declare one numbered part of an evaluation type split into ``total_items`` parts."""
        self._check_part_numbers(item_number, total_items)
        scheme = self._schemes.get_scheme(course_id)
        slot = scheme.find(label)
        if slot is None:
            raise ValidationError(f"'{label}' is not an evaluation type of course {course_id}",
                                  details={'course_id': course_id, 'label': label})
        if individual_weight is None:
            individual_weight = slot.weight_percent / Decimal(total_items)

        with self._repos.transaction():
            existing = self._repos.split_items.for_label(course_id, slot.label)
            if any(item.total_items != total_items for item in existing):
                raise ValidationError(
                    f"'{slot.label}' is already split into {existing[0].total_items} parts",
                    details={'label': slot.label, 'total_items': existing[0].total_items}
                )
            if any(item.item_number == item_number for item in existing):
                raise ValidationError(f"Part {item_number} of '{slot.label}' already exists",
                                      details={'label': slot.label, 'item_number': item_number})
            item = SplitEvaluationItem(course_id, slot.label, item_number, total_items,
                                       individual_weight, due_date)
            self._repos.split_items.save(item)
        logger.info("Registered part %d/%d of %s in course %s", item_number, total_items, slot.label, course_id)
        return item

    def split_evaluation(self, course_id: str, label: str, total_items: int,
                         due_dates: Optional[Sequence[date]] = None) -> List[SplitEvaluationItem]:
        """Register all ``total_items`` parts of an evaluation type with equal weights."""
        self._check_part_numbers(1, total_items)
        if due_dates is not None and len(due_dates) != total_items:
            raise ValidationError("One due date is needed per part")
        with self._repos.transaction():
            return [
                self.register_sub_item(course_id, label, number, total_items,
                                       due_date=due_dates[number - 1] if due_dates else None)
                for number in range(1, total_items + 1)
            ]

    def record_sub_score(self, enrollment_id: str, label: str, item_number: int, value: Any,
                         notes: Optional[str] = None) -> SubScoreResult:
        """Record one part of a split evaluation.

        The ledger entry of the parent label is written, or refreshed, once every
        part has a score; its value is the individual-weight average of the parts.
        """
        submission = self._parse_submission({'label': label, 'value': value, 'notes': notes})
        enrollment = self._writable_enrollment(enrollment_id)
        self._gate.ensure_can_record(enrollment.student_id, enrollment.course_id, submission.label)
        scheme = self._schemes.get_scheme(enrollment.course_id)
        slot = scheme.find(submission.label)
        if slot is None:
            raise ValidationError(f"'{submission.label}' is not an evaluation type of this course",
                                  details={'label': submission.label})
        items = self._repos.split_items.for_label(enrollment.course_id, slot.label)
        item = next((i for i in items if i.item_number == item_number), None)
        if item is None:
            raise NotFoundError(f"Part {item_number} of '{slot.label}' is not registered",
                                details={'label': slot.label, 'item_number': item_number})

        with self._write_locks(enrollment_id):
            enrollment = self._writable_enrollment(enrollment_id)
            with self._repos.transaction():
                sub_score = self._repos.sub_item_scores.find(item.id, enrollment_id)
                if sub_score is None:
                    sub_score = SubItemScore(item.id, enrollment_id, submission.value, submission.notes)
                else:
                    sub_score.overwrite(submission.value, submission.notes)
                self._repos.sub_item_scores.save(sub_score)

                scores = {}
                for part in items:
                    found = self._repos.sub_item_scores.find(part.id, enrollment_id)
                    if found is not None:
                        scores[part.id] = found.value
                result = SubScoreResult(sub_score=sub_score, scored_items=len(scores),
                                        total_items=item.total_items)
                if len(items) == item.total_items and len(scores) == item.total_items:
                    aggregate = self._split_average(items, scores)
                    result.aggregate_entry = self._upsert(
                        enrollment_id, slot.label, aggregate, slot.weight_percent,
                        f"Average of {item.total_items} parts"
                    )

        logger.info("Recorded part %d of %s = %s for enrollment %s (%d/%d scored)",
                    item_number, slot.label, submission.value, enrollment_id,
                    result.scored_items, result.total_items)
        if result.aggregate_written:
            self._notifications.notify(
                NotificationKind.GRADE_RECORDED,
                {'enrollment_id': enrollment_id, 'course_id': enrollment.course_id,
                 'label': slot.label, 'value': str(result.aggregate_entry.value)},
                recipient_id=enrollment.student_id
            )
        return result

    # Reads

    def entries(self, enrollment_id: str) -> List[GradeEntry]:
        self._get_enrollment(enrollment_id)
        return self._repos.grade_entries.for_enrollment(enrollment_id)

    def score_set(self, enrollment_id: str) -> WeightedScoreSet:
        return WeightedScoreSet.from_entries(self.entries(enrollment_id))

    def weighted_sum(self, enrollment_id: str) -> Decimal:
        return self.score_set(enrollment_id).weighted_sum

    def missing_labels(self, enrollment_id: str) -> List[str]:
        """Active evaluation labels of the course without a recorded score."""
        enrollment = self._get_enrollment(enrollment_id)
        scheme = self._schemes.get_scheme(enrollment.course_id)
        return self.score_set(enrollment_id).missing(scheme.required_labels)

    def is_complete(self, enrollment_id: str) -> bool:
        return not self.missing_labels(enrollment_id)

    def rounded_final_grade(self, enrollment_id: str) -> Optional[int]:
        """Rounded grade, or None until every active evaluation has a score."""
        if not self.is_complete(enrollment_id):
            return None
        return self.score_set(enrollment_id).rounded_final_grade()

    def grade_report(self, enrollment_id: str) -> FinalGradeReport:
        enrollment = self._get_enrollment(enrollment_id)
        return self._report(enrollment, self._schemes.get_scheme(enrollment.course_id))

    def course_gradebook(self, course_id: str, period_id: Optional[str] = None) -> List[FinalGradeReport]:
        """Reports of every non-withdrawn enrollment of a course."""
        scheme = self._schemes.get_scheme(course_id)
        enrollments = self._repos.enrollments.for_course(course_id, period_id)
        return [self._report(e, scheme) for e in enrollments if not e.is_withdrawn]

    def period_statistics(self, period_id: str) -> PeriodStatistics:
        """Counts enrollments passing on the raw weighted sum."""
        if not self._repos.periods.exists(period_id):
            raise NotFoundError(f"Period {period_id} not found", details={'period_id': period_id})
        threshold = self._settings.pass_threshold_raw
        stats = PeriodStatistics(period_id=period_id, threshold=threshold)
        for enrollment in self._repos.enrollments.for_period(period_id):
            stats.enrollments += 1
            if enrollment.is_withdrawn:
                stats.withdrawn += 1
                continue
            score_set = WeightedScoreSet.from_entries(self._repos.grade_entries.for_enrollment(enrollment.id))
            if not score_set.items:
                continue
            course = stats.courses.setdefault(enrollment.course_id, CourseStatistics(enrollment.course_id))
            stats.graded += 1
            course.graded += 1
            course.total_weighted_sum += score_set.weighted_sum
            if score_set.passes_raw(threshold):
                stats.passing += 1
                course.passing += 1
            else:
                stats.failing += 1
                course.failing += 1
        return stats

    # Helpers

    def _report(self, enrollment: Enrollment, scheme: EvaluationScheme) -> FinalGradeReport:
        entries = self._repos.grade_entries.for_enrollment(enrollment.id)
        score_set = WeightedScoreSet.from_entries(entries)
        missing = score_set.missing(scheme.required_labels)
        complete = not missing
        rounded = score_set.rounded_final_grade() if complete else None
        return FinalGradeReport(
            enrollment_id=enrollment.id,
            student_id=enrollment.student_id,
            course_id=enrollment.course_id,
            period_id=enrollment.period_id,
            weighted_sum=score_set.weighted_sum,
            recorded_weight=score_set.recorded_weight,
            is_complete=complete,
            missing_labels=missing,
            provisional_grade=score_set.rounded_final_grade(),
            rounded_final_grade=rounded,
            passes_rounded=rounded is not None and rounded >= self._settings.pass_threshold_rounded,
            passes_raw=complete and score_set.passes_raw(self._settings.pass_threshold_raw),
            frozen_final_grade=enrollment.final_grade,
            entries=entries
        )

    def _parse_submission(self, data: Dict[str, Any]) -> ScoreSubmission:
        try:
            submission = ScoreSubmission.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid score for '{data.get('label')}'",
                details={'errors': [
                    {'field': '.'.join(str(p) for p in err['loc']), 'message': err['msg']}
                    for err in e.errors()
                ]}
            ) from e
        low, high = self._settings.min_score, self._settings.max_score
        if not low <= submission.value <= high:
            raise ValidationError(
                f"Score {submission.value} is outside the {low}-{high} scale",
                details={'label': submission.label, 'value': str(submission.value)}
            )
        return submission

    @staticmethod
    def _check_part_numbers(item_number: int, total_items: int) -> None:
        if not 1 <= total_items <= MAX_SPLIT_ITEMS:
            raise ValidationError(f"A split evaluation has between 1 and {MAX_SPLIT_ITEMS} items",
                                  details={'total_items': total_items})
        if not 1 <= item_number <= total_items:
            raise ValidationError(f"Item number must be between 1 and {total_items}",
                                  details={'item_number': item_number, 'total_items': total_items})

    def _resolve_label(self, scheme: EvaluationScheme, label: str, weight: Optional[Decimal]):
        slot = scheme.find(label)
        if slot is not None:
            return slot.label, weight if weight is not None else slot.weight_percent
        if weight is None:
            raise ValidationError(
                f"'{label}' is not an evaluation type of this course and no weight was given",
                details={'label': label, 'course_id': scheme.course_id}
            )
        return label, weight

    def _upsert(self, enrollment_id: str, label: str, value: Decimal, weight: Decimal,
                notes: Optional[str]) -> GradeEntry:
        entry = self._repos.grade_entries.find_by_label(enrollment_id, label)
        if entry is None:
            entry = GradeEntry(enrollment_id, label, value, weight, notes)
        else:
            entry.overwrite(value, weight, notes)
        self._repos.grade_entries.save(entry)
        return entry

    @staticmethod
    def _split_average(items: List[SplitEvaluationItem], scores: Dict[str, Decimal]) -> Decimal:
        total_weight = sum((i.individual_weight for i in items), ZERO)
        if total_weight == ZERO:
            average = sum((scores[i.id] for i in items), ZERO) / Decimal(len(items))
        else:
            average = sum((scores[i.id] * i.individual_weight for i in items), ZERO) / total_weight
        return average.quantize(CENT, rounding=ROUND_HALF_UP)

    def _get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = self._repos.enrollments.find_by_id(enrollment_id)
        if enrollment is None:
            raise NotFoundError(f"Enrollment {enrollment_id} not found",
                                details={'enrollment_id': enrollment_id})
        return enrollment

    def _writable_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = self._get_enrollment(enrollment_id)
        if enrollment.is_withdrawn:
            raise ValidationError("Scores cannot be recorded for a withdrawn enrollment",
                                  details={'enrollment_id': enrollment_id})
        period = self._repos.periods.find_by_id(enrollment.period_id)
        if period is not None and period.state == PeriodState.CLOSED:
            raise InvalidStateTransition(
                f"Period {period.name} is closed; its grades are frozen",
                details={'period_id': period.id, 'enrollment_id': enrollment_id}
            )
        return enrollment

    @contextmanager
    def _write_locks(self, enrollment_id: str) -> Iterator[None]:
        """Shared period lock, then the enrollment's write lock."""
        holder = current_holder("ledger_service")
        wait = self._settings.lock_wait_timeout
        with self._concurrency_manager.lock(PERIOD_LIFECYCLE_RESOURCE, LockType.READ, holder, wait=wait):
            with self._concurrency_manager.lock(enrollment_resource(enrollment_id), LockType.WRITE,
                                                holder, wait=wait):
                yield
