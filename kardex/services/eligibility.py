"""
Attendance gate for evaluations that require a minimum attendance.
"""

import logging
from typing import Iterable, Optional

from ..core.default_scheme import final_exam_labels
from ..core.exceptions import AttendanceGateViolation
from ..core.interfaces import AttendanceStatistics
from ..core.scoring import normalize_label

logger = logging.getLogger(__name__)

DEFAULT_GATED_LABELS = final_exam_labels()


class EligibilityGate:
    """Decides whether a gated evaluation may be recorded for a student.

    The yes/no decision is taken from the attendance collaborator's summary:
    a non-empty blocking message denies.
    """

    def __init__(self, attendance: AttendanceStatistics,
                 gated_labels: Optional[Iterable[str]] = None):
        self._attendance = attendance
        self._gated = {normalize_label(label) for label in (gated_labels or DEFAULT_GATED_LABELS)}

    def is_gated_label(self, label: str) -> bool:
        return normalize_label(label) in self._gated

    def can_record(self, student_id: str, course_id: str) -> bool:
        return not self._attendance.get_attendance_summary(student_id, course_id).is_blocked

    def blocking_reason(self, student_id: str, course_id: str) -> str:
        """Message explaining a denial; empty when the student is eligible."""
        return self._attendance.get_attendance_summary(student_id, course_id).blocking_message

    def ensure_can_record(self, student_id: str, course_id: str, label: str) -> None:
        """Raise AttendanceGateViolation if ``label`` is gated and the student is blocked."""
        if not self.is_gated_label(label):
            return
        summary = self._attendance.get_attendance_summary(student_id, course_id)
        if summary.is_blocked:
            logger.warning("Attendance gate denied %s for student %s in course %s",
                           label, student_id, course_id)
            raise AttendanceGateViolation(
                summary.blocking_message,
                details={
                    'student_id': student_id,
                    'course_id': course_id,
                    'label': label,
                    'attendance_percent': summary.attendance_percent
                }
            )
