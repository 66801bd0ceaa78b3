"""
Enrollment service: the student, course and enrollment records graded by the engine.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import EngineSettings
from ..core.entities import Course, Enrollment, Student
from ..core.enums import EnrollmentStatus, PeriodState
from ..core.exceptions import InvalidStateTransition, NotFoundError, ValidationError
from ..persistence.repositories import RepositoryRegistry
from .concurrency_manager import ConcurrencyManager, LockType, current_holder, enrollment_resource

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentResult:
    """Result of an enrollment operation."""
    success: bool
    enrollment: Optional[Enrollment]
    message: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.metadata is None:
            self.metadata = {}


class EnrollmentService:
    """Registers students and courses and manages their enrollments."""

    def __init__(self, repositories: RepositoryRegistry, concurrency_manager: ConcurrencyManager,
                 settings: Optional[EngineSettings] = None):
        self._repos = repositories
        self._concurrency_manager = concurrency_manager
        self._settings = settings or EngineSettings()

    def register_student(self, code: str, full_name: str = "", current_cycle: Optional[int] = None) -> Student:
        cycle = current_cycle if current_cycle is not None else self._settings.min_cycle
        if not self._settings.min_cycle <= cycle <= self._settings.max_cycle:
            raise ValidationError(
                f"Cycle must be between {self._settings.min_cycle} and {self._settings.max_cycle}",
                details={'current_cycle': cycle}
            )
        with self._repos.transaction():
            if self._repos.students.find_by_code(code) is not None:
                raise ValidationError(f"Student code {code} is already registered", details={'code': code})
            student = Student(code, full_name, cycle)
            self._repos.students.save(student)
        logger.info("Registered student %s (cycle %d)", code, cycle)
        return student

    def register_course(self, code: str, name: str, credits: int = 3, cycle: int = 1) -> Course:
        course = Course(code, name, credits, cycle)
        self._repos.courses.save(course)
        logger.info("Registered course %s %s", code, name)
        return course

    def get_student(self, student_id: str) -> Student:
        student = self._repos.students.find_by_id(student_id)
        if student is None:
            raise NotFoundError(f"Student {student_id} not found", details={'student_id': student_id})
        return student

    def get_course(self, course_id: str) -> Course:
        course = self._repos.courses.find_by_id(course_id)
        if course is None:
            raise NotFoundError(f"Course {course_id} not found", details={'course_id': course_id})
        return course

    def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = self._repos.enrollments.find_by_id(enrollment_id)
        if enrollment is None:
            raise NotFoundError(f"Enrollment {enrollment_id} not found",
                                details={'enrollment_id': enrollment_id})
        return enrollment

    def enroll(self, student_id: str, course_id: str, period_id: str,
               status: EnrollmentStatus = EnrollmentStatus.ENROLLED,
               has_directed: bool = False) -> EnrollmentResult:
        """Enroll a student in a course for a period that is not closed."""
        self.get_student(student_id)
        self.get_course(course_id)
        if status == EnrollmentStatus.WITHDRAWN:
            raise ValidationError("A new enrollment cannot start withdrawn")

        with self._repos.transaction():
            period = self._repos.periods.find_by_id(period_id)
            if period is None:
                raise NotFoundError(f"Period {period_id} not found", details={'period_id': period_id})
            if period.state == PeriodState.CLOSED:
                raise InvalidStateTransition(f"Period {period.name} is closed",
                                             details={'period_id': period_id})

            current = self._repos.enrollments.query_by(
                lambda e: e.student_id == student_id and e.course_id == course_id
                and e.period_id == period_id and not e.is_withdrawn
            )
            if current:
                return EnrollmentResult(
                    success=True,
                    enrollment=current[0],
                    message="Student already enrolled"
                )

            enrollment = Enrollment(student_id, course_id, period_id, status, has_directed)
            self._repos.enrollments.save(enrollment)

        logger.info("Enrolled student %s in course %s for period %s", student_id, course_id, period_id)
        return EnrollmentResult(success=True, enrollment=enrollment, message="Student enrolled successfully")

    def withdraw(self, enrollment_id: str) -> Enrollment:
        """Withdraw an enrollment; it no longer counts for grading or promotion."""
        holder = current_holder("enrollment_service")
        with self._concurrency_manager.lock(enrollment_resource(enrollment_id), LockType.WRITE, holder,
                                            wait=self._settings.lock_wait_timeout):
            with self._repos.transaction():
                enrollment = self.get_enrollment(enrollment_id)
                period = self._repos.periods.find_by_id(enrollment.period_id)
                if period is not None and period.state == PeriodState.CLOSED:
                    raise InvalidStateTransition(f"Period {period.name} is closed",
                                                 details={'period_id': period.id})
                enrollment.withdraw()
                self._repos.enrollments.save(enrollment)
        logger.info("Withdrew enrollment %s", enrollment_id)
        return enrollment

    def enrollments_for_student(self, student_id: str) -> List[Enrollment]:
        return self._repos.enrollments.for_student(student_id)
