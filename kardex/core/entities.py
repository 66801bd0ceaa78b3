"""
Core entities for the Kardex grading engine.
"""

import uuid
from abc import ABC
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from .enums import EnrollmentStatus, PeriodState
from .exceptions import ValidationError
from .scoring import to_decimal


class AbstractEntity(ABC):
    """Base abstract entity with universal ID, timestamps, and versioning."""

    def __init__(self, entity_id: Optional[str] = None):
        self._id = entity_id or str(uuid.uuid4())
        self._created_at = datetime.now(timezone.utc)
        self._updated_at = self._created_at
        self._version = 1

    @property
    def id(self) -> str:
        """Get the entity ID."""
        return self._id

    @property
    def created_at(self) -> datetime:
        """Get creation timestamp."""
        return self._created_at

    @property
    def updated_at(self) -> datetime:
        """Get last update timestamp."""
        return self._updated_at

    @property
    def version(self) -> int:
        """Get current version."""
        return self._version

    def update(self, **kwargs) -> None:
        """Update entity with new data."""
        for key, value in kwargs.items():
            if hasattr(self, f"_{key}"):
                setattr(self, f"_{key}", value)
        self._updated_at = datetime.now(timezone.utc)
        self._version += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert entity to dictionary."""
        return {
            'id': self._id,
            'created_at': self._created_at.isoformat(),
            'updated_at': self._updated_at.isoformat(),
            'version': self._version
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(id={self._id})"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self._id}, version={self._version})"


class Student(AbstractEntity):
    """Student with the academic progress fields the engine maintains."""

    def __init__(self, code: str, full_name: str = "", current_cycle: int = 1,
                 cumulative_credits: int = 0, cumulative_gpa: Optional[Decimal] = None, **kwargs):
        super().__init__(**kwargs)
        self._code = code
        self._full_name = full_name
        self._current_cycle = current_cycle
        self._cumulative_credits = cumulative_credits
        self._cumulative_gpa = cumulative_gpa

    @property
    def code(self) -> str:
        return self._code

    @property
    def full_name(self) -> str:
        return self._full_name

    @property
    def current_cycle(self) -> int:
        return self._current_cycle

    @property
    def cumulative_credits(self) -> int:
        return self._cumulative_credits

    @property
    def cumulative_gpa(self) -> Optional[Decimal]:
        return self._cumulative_gpa

    def advance_cycle(self, new_cycle: int) -> None:
        """Move the student to a later cycle. Only the period lifecycle calls this."""
        if new_cycle < self._current_cycle:
            raise ValidationError("A student's cycle can never decrease")
        self.update(current_cycle=new_cycle)

    def to_dict(self) -> Dict[str, Any]:
        """Convert student to dictionary."""
        base_dict = super().to_dict()
        base_dict.update({
            'code': self._code,
            'full_name': self._full_name,
            'current_cycle': self._current_cycle,
            'cumulative_credits': self._cumulative_credits,
            'cumulative_gpa': str(self._cumulative_gpa) if self._cumulative_gpa is not None else None
        })
        return base_dict


class Course(AbstractEntity):
    """Course entity representing an academic course."""

    def __init__(self, code: str, name: str, credits: int = 3, cycle: int = 1, **kwargs):
        super().__init__(**kwargs)
        if credits < 0:
            raise ValidationError("Credits cannot be negative")
        self._code = code
        self._name = name
        self._credits = credits
        self._cycle = cycle

    @property
    def code(self) -> str:
        return self._code

    @property
    def name(self) -> str:
        return self._name

    @property
    def credits(self) -> int:
        return self._credits

    @property
    def cycle(self) -> int:
        return self._cycle

    def to_dict(self) -> Dict[str, Any]:
        """Convert course to dictionary."""
        base_dict = super().to_dict()
        base_dict.update({
            'code': self._code,
            'name': self._name,
            'credits': self._credits,
            'cycle': self._cycle
        })
        return base_dict


class EvaluationType(AbstractEntity):
    """One weighted evaluation slot of a course's scheme."""

    def __init__(self, course_id: str, label: str, weight_percent: Any,
                 display_order: int = 0, active: bool = True, **kwargs):
        super().__init__(**kwargs)
        self._course_id = course_id
        self._label = label.strip()
        self._weight_percent = to_decimal(weight_percent)
        self._display_order = display_order
        self._active = active

    @property
    def course_id(self) -> str:
        return self._course_id

    @property
    def label(self) -> str:
        return self._label

    @property
    def weight_percent(self) -> Decimal:
        return self._weight_percent

    @property
    def display_order(self) -> int:
        return self._display_order

    @property
    def active(self) -> bool:
        return self._active

    def reconfigure(self, label: str, weight_percent: Any, display_order: int, active: bool) -> None:
        """Apply a new label, weight, order and active flag."""
        self.update(
            label=label.strip(),
            weight_percent=to_decimal(weight_percent),
            display_order=display_order,
            active=active
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert evaluation type to dictionary."""
        base_dict = super().to_dict()
        base_dict.update({
            'course_id': self._course_id,
            'label': self._label,
            'weight_percent': str(self._weight_percent),
            'display_order': self._display_order,
            'active': self._active
        })
        return base_dict


class GradeEntry(AbstractEntity):
    """A recorded score for one evaluation label of one enrollment."""

    def __init__(self, enrollment_id: str, evaluation_label: str, value: Any,
                 weight_percent: Any, notes: Optional[str] = None,
                 recorded_at: Optional[datetime] = None, **kwargs):
        super().__init__(**kwargs)
        self._enrollment_id = enrollment_id
        self._evaluation_label = evaluation_label.strip()
        self._value = to_decimal(value)
        self._weight_percent = to_decimal(weight_percent)
        self._notes = notes
        self._recorded_at = recorded_at or datetime.now(timezone.utc)

    @property
    def enrollment_id(self) -> str:
        return self._enrollment_id

    @property
    def evaluation_label(self) -> str:
        return self._evaluation_label

    @property
    def value(self) -> Decimal:
        return self._value

    @property
    def weight_percent(self) -> Decimal:
        return self._weight_percent

    @property
    def notes(self) -> Optional[str]:
        return self._notes

    @property
    def recorded_at(self) -> datetime:
        return self._recorded_at

    def overwrite(self, value: Any, weight_percent: Any, notes: Optional[str]) -> None:
        """Replace the score of a resubmitted evaluation."""
        self.update(
            value=to_decimal(value),
            weight_percent=to_decimal(weight_percent),
            notes=notes,
            recorded_at=datetime.now(timezone.utc)
        )

    def relabel(self, label: str, weight_percent: Any) -> None:
        """Move the entry to another evaluation label after a scheme change."""
        self.update(evaluation_label=label.strip(), weight_percent=to_decimal(weight_percent))

    def reweight(self, weight_percent: Any) -> None:
        """Refresh the weight snapshot without touching the value."""
        self.update(weight_percent=to_decimal(weight_percent))

    def to_dict(self) -> Dict[str, Any]:
        """Convert grade entry to dictionary."""
        base_dict = super().to_dict()
        base_dict.update({
            'enrollment_id': self._enrollment_id,
            'evaluation_label': self._evaluation_label,
            'value': str(self._value),
            'weight_percent': str(self._weight_percent),
            'notes': self._notes,
            'recorded_at': self._recorded_at.isoformat()
        })
        return base_dict


class Enrollment(AbstractEntity):
    """A student's enrollment in a course for one academic period."""

    def __init__(self, student_id: str, course_id: str, period_id: str,
                 status: EnrollmentStatus = EnrollmentStatus.ENROLLED,
                 has_directed: bool = False, final_grade: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        self._student_id = student_id
        self._course_id = course_id
        self._period_id = period_id
        self._status = status
        self._has_directed = has_directed
        self._final_grade = final_grade

    @property
    def student_id(self) -> str:
        return self._student_id

    @property
    def course_id(self) -> str:
        return self._course_id

    @property
    def period_id(self) -> str:
        return self._period_id

    @property
    def status(self) -> EnrollmentStatus:
        return self._status

    @property
    def has_directed(self) -> bool:
        return self._has_directed

    @property
    def final_grade(self) -> Optional[int]:
        return self._final_grade

    @property
    def is_withdrawn(self) -> bool:
        return self._status == EnrollmentStatus.WITHDRAWN

    def withdraw(self) -> None:
        """Withdraw the enrollment, excluding it from grading and promotion."""
        if self.is_withdrawn:
            raise ValidationError("Enrollment is already withdrawn")
        self.update(status=EnrollmentStatus.WITHDRAWN)

    def freeze_final_grade(self, grade: Optional[int]) -> None:
        """Store the rounded grade computed at period close."""
        self.update(final_grade=grade)

    def to_dict(self) -> Dict[str, Any]:
        """Convert enrollment to dictionary."""
        base_dict = super().to_dict()
        base_dict.update({
            'student_id': self._student_id,
            'course_id': self._course_id,
            'period_id': self._period_id,
            'status': self._status.value,
            'has_directed': self._has_directed,
            'final_grade': self._final_grade
        })
        return base_dict


class AcademicPeriod(AbstractEntity):
    """An academic term. At most one period is active system-wide."""

    def __init__(self, name: str, year: int, cycle_label: str,
                 start_date: date, end_date: date, **kwargs):
        super().__init__(**kwargs)
        if start_date >= end_date:
            raise ValidationError("The start date must be before the end date")
        self._name = name
        self._year = year
        self._cycle_label = cycle_label
        self._start_date = start_date
        self._end_date = end_date
        self._state = PeriodState.PLANNED
        self._opened_at: Optional[datetime] = None
        self._closed_at: Optional[datetime] = None
        self._promotion_applied = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def year(self) -> int:
        return self._year

    @property
    def cycle_label(self) -> str:
        return self._cycle_label

    @property
    def start_date(self) -> date:
        return self._start_date

    @property
    def end_date(self) -> date:
        return self._end_date

    @property
    def state(self) -> PeriodState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state == PeriodState.ACTIVE

    @property
    def opened_at(self) -> Optional[datetime]:
        return self._opened_at

    @property
    def closed_at(self) -> Optional[datetime]:
        return self._closed_at

    @property
    def promotion_applied(self) -> bool:
        return self._promotion_applied

    def mark_active(self) -> None:
        self.update(state=PeriodState.ACTIVE, opened_at=datetime.now(timezone.utc))

    def mark_closed(self) -> None:
        self.update(state=PeriodState.CLOSED, closed_at=datetime.now(timezone.utc))

    def mark_promotion_applied(self) -> None:
        self.update(promotion_applied=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert period to dictionary."""
        base_dict = super().to_dict()
        base_dict.update({
            'name': self._name,
            'year': self._year,
            'cycle_label': self._cycle_label,
            'start_date': self._start_date.isoformat(),
            'end_date': self._end_date.isoformat(),
            'state': self._state.value,
            'active': self.active,
            'opened_at': self._opened_at.isoformat() if self._opened_at else None,
            'closed_at': self._closed_at.isoformat() if self._closed_at else None,
            'promotion_applied': self._promotion_applied
        })
        return base_dict


MAX_SPLIT_ITEMS = 10


class SplitEvaluationItem(AbstractEntity):
    """One numbered part of an evaluation type split into N independent submissions."""

    def __init__(self, course_id: str, evaluation_label: str, item_number: int,
                 total_items: int, individual_weight: Any,
                 due_date: Optional[date] = None, **kwargs):
        super().__init__(**kwargs)
        if total_items < 1 or total_items > MAX_SPLIT_ITEMS:
            raise ValidationError(f"A split evaluation has between 1 and {MAX_SPLIT_ITEMS} items")
        if item_number < 1 or item_number > total_items:
            raise ValidationError(f"Item number must be between 1 and {total_items}")
        self._course_id = course_id
        self._evaluation_label = evaluation_label.strip()
        self._item_number = item_number
        self._total_items = total_items
        self._individual_weight = to_decimal(individual_weight)
        self._due_date = due_date

    @property
    def course_id(self) -> str:
        return self._course_id

    @property
    def evaluation_label(self) -> str:
        return self._evaluation_label

    @property
    def item_number(self) -> int:
        return self._item_number

    @property
    def total_items(self) -> int:
        return self._total_items

    @property
    def individual_weight(self) -> Decimal:
        return self._individual_weight

    @property
    def due_date(self) -> Optional[date]:
        return self._due_date

    def relabel(self, label: str) -> None:
        self.update(evaluation_label=label.strip())

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            'course_id': self._course_id,
            'evaluation_label': self._evaluation_label,
            'item_number': self._item_number,
            'total_items': self._total_items,
            'individual_weight': str(self._individual_weight),
            'due_date': self._due_date.isoformat() if self._due_date else None
        })
        return base_dict


class SubItemScore(AbstractEntity):
    """A student's score on one split evaluation item."""

    def __init__(self, item_id: str, enrollment_id: str, value: Any,
                 notes: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self._item_id = item_id
        self._enrollment_id = enrollment_id
        self._value = to_decimal(value)
        self._notes = notes

    @property
    def item_id(self) -> str:
        return self._item_id

    @property
    def enrollment_id(self) -> str:
        return self._enrollment_id

    @property
    def value(self) -> Decimal:
        return self._value

    @property
    def notes(self) -> Optional[str]:
        return self._notes

    def overwrite(self, value: Any, notes: Optional[str]) -> None:
        self.update(value=to_decimal(value), notes=notes)
