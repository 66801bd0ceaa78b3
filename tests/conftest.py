from datetime import date

import pytest

from kardex.config import EngineSettings
from kardex.core.interfaces import AttendanceStatistics, AttendanceSummary
from kardex.main import KardexPlatform
from kardex.services import InMemoryNotificationSink


class FakeAttendance(AttendanceStatistics):
    """Attendance source that blocks the (student, course) pairs it is told to."""

    def __init__(self):
        self.blocked = {}

    def block(self, student_id, course_id, message="Attendance below 70%"):
        self.blocked[(student_id, course_id)] = message

    def get_attendance_summary(self, student_id, course_id):
        message = self.blocked.get((student_id, course_id), "")
        return AttendanceSummary(total_sessions=10, present_sessions=5 if message else 10,
                                 blocking_message=message)


@pytest.fixture()
def settings():
    return EngineSettings(lock_wait_timeout=2.0)


@pytest.fixture()
def sink():
    return InMemoryNotificationSink()


@pytest.fixture()
def attendance():
    return FakeAttendance()


@pytest.fixture()
def platform(settings, attendance, sink):
    return KardexPlatform(settings, attendance=attendance, sinks=[sink])


@pytest.fixture()
def term(platform):
    period = platform.periods.create_period("2025-I", 2025, "I", date(2025, 3, 10), date(2025, 7, 20))
    platform.periods.open_period(period.id)
    return platform.periods.get_period(period.id)


@pytest.fixture()
def next_term(platform):
    return platform.periods.create_period("2025-II", 2025, "II", date(2025, 8, 18), date(2025, 12, 19))


@pytest.fixture()
def course(platform):
    return platform.enrollments.register_course("MAT101", "Calculus I", credits=4)


@pytest.fixture()
def student(platform):
    return platform.enrollments.register_student("2025-0001", "Ana Quispe")


@pytest.fixture()
def enrollment(platform, student, course, term):
    return platform.enrollments.enroll(student.id, course.id, term.id).enrollment


@pytest.fixture()
def make_enrollment(platform, course, term):
    """Register a student and enroll them in ``course`` for ``term``."""
    counter = iter(range(100, 1000))

    def _make(cycle=1, target_course=None, period=None, code=None):
        new_student = platform.enrollments.register_student(code or f"2025-{next(counter)}",
                                                            current_cycle=cycle)
        return platform.enrollments.enroll(
            new_student.id, (target_course or course).id, (period or term).id
        ).enrollment

    return _make


def fill_default_scheme(platform, enrollment_id, values=(15, 14, 18, 16, 17, 19, 15)):
    labels = ("Midterm1", "Midterm2", "Labs", "Midpoint", "Final", "Attitude", "Assignments")
    for label, value in zip(labels, values):
        platform.ledger.record_score(enrollment_id, label, value)
