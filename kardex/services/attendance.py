"""
In-memory attendance register implementing the attendance statistics interface.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Tuple

from ..core.exceptions import ValidationError
from ..core.interfaces import AttendanceStatistics, AttendanceSummary


@dataclass(frozen=True)
class AttendanceRecord:
    student_id: str
    course_id: str
    session_date: date
    present: bool


class AttendanceRegister(AttendanceStatistics):
    """Records class sessions and blocks students below a minimum attendance."""

    def __init__(self, min_attendance_percent: float = 70.0):
        if not 0 <= min_attendance_percent <= 100:
            raise ValidationError("Minimum attendance must be between 0 and 100 percent")
        self._min_percent = Decimal(str(min_attendance_percent))
        self._records: Dict[Tuple[str, str], Dict[date, AttendanceRecord]] = defaultdict(dict)
        self._lock = threading.RLock()

    @property
    def min_attendance_percent(self) -> Decimal:
        return self._min_percent

    def record_session(self, student_id: str, course_id: str, session_date: date,
                       present: bool) -> AttendanceRecord:
        """Record (or correct) one session. A second call for the same date overwrites it."""
        record = AttendanceRecord(student_id, course_id, session_date, present)
        with self._lock:
            self._records[(student_id, course_id)][session_date] = record
        return record

    def records_for(self, student_id: str, course_id: str) -> List[AttendanceRecord]:
        with self._lock:
            sessions = self._records.get((student_id, course_id), {})
            return sorted(sessions.values(), key=lambda r: r.session_date)

    def get_attendance_summary(self, student_id: str, course_id: str) -> AttendanceSummary:
        records = self.records_for(student_id, course_id)
        total = len(records)
        present = sum(1 for r in records if r.present)

        message = ""
        if total:
            percent = (Decimal(present) * 100 / Decimal(total)).quantize(Decimal("0.01"))
            if percent < self._min_percent:
                message = (f"Attendance of {percent}% is below the required "
                           f"{float(self._min_percent):g}% to sit the final exam")
        return AttendanceSummary(total_sessions=total, present_sessions=present,
                                 blocking_message=message)
