#!/usr/bin/env python3
"""
Demo scenario for the Kardex grading engine.
"""

import logging
from datetime import date, timedelta

from kardex.core.exceptions import AttendanceGateViolation, IncompleteGradingError
from kardex.main import KardexPlatform


def run_demo():
    """Run a full term: scheme, grading, gate, reconfiguration, close and promotion."""
    print("=" * 60)
    print("KARDEX GRADING ENGINE - DEMO")
    print("=" * 60)

    platform = KardexPlatform({'log_level': 'WARNING'})

    print("\n1. Creating periods, course and students...")
    term, data = create_sample_data(platform)

    print("\n2. Configuring the evaluation scheme...")
    demonstrate_scheme(platform, data)

    print("\n3. Recording grades...")
    demonstrate_grading(platform, data)

    print("\n4. Attendance gate...")
    demonstrate_gate(platform, data)

    print("\n5. Reconfiguring with migration...")
    demonstrate_reconfiguration(platform, data)

    print("\n6. Closing the term and opening the next one...")
    demonstrate_period_transition(platform, term, data)

    print("\n" + "=" * 60)
    print("DEMO COMPLETED SUCCESSFULLY!")
    print("=" * 60)


def create_sample_data(platform):
    periods = platform.periods
    term = periods.create_period("2025-I", 2025, "I", date(2025, 3, 10), date(2025, 7, 20))
    next_term = periods.create_period("2025-II", 2025, "II", date(2025, 8, 18), date(2025, 12, 19))
    periods.open_period(term.id)

    course = platform.enrollments.register_course("INF201", "Data Structures", credits=4, cycle=3)
    students = [
        platform.enrollments.register_student("2023-0101", "Lucia Mamani", current_cycle=3),
        platform.enrollments.register_student("2023-0102", "Diego Torres", current_cycle=3),
        platform.enrollments.register_student("2023-0103", "Rosa Huaman", current_cycle=3),
    ]
    enrollments = {
        s.code: platform.enrollments.enroll(s.id, course.id, term.id).enrollment for s in students
    }
    print(f"  Period {term.name} active, {len(students)} students enrolled in {course.name}")
    return term, {'course': course, 'students': students, 'enrollments': enrollments,
                  'next_term': next_term}


def demonstrate_scheme(platform, data):
    course = data['course']
    result = platform.schemes.configure(course.id, [
        {'label': 'Parcial 1', 'weight_percent': 20},
        {'label': 'Parcial 2', 'weight_percent': 20},
        {'label': 'Labs', 'weight_percent': 30},
        {'label': 'Final Exam', 'weight_percent': 30},
    ])
    for slot in result.scheme.slots:
        print(f"  {slot.display_order}. {slot.label:<12} {slot.weight_percent}%")
    platform.ledger.split_evaluation(
        course.id, 'Labs', 3, due_dates=[date(2025, 4, 1) + timedelta(weeks=4 * i) for i in range(3)]
    )
    print("  Labs split into 3 independently submitted parts")


def demonstrate_grading(platform, data):
    ledger = platform.ledger
    sample = {
        '2023-0101': ({'Parcial 1': 16, 'Parcial 2': 17, 'Final Exam': 18}, (15, 17, 19)),
        '2023-0102': ({'Parcial 1': 9, 'Parcial 2': 11, 'Final Exam': 10}, (10, 12, 11)),
    }
    for code, (scores, lab_parts) in sample.items():
        enrollment = data['enrollments'][code]
        ledger.record_scores(enrollment.id, scores)
        for number, value in enumerate(lab_parts, start=1):
            outcome = ledger.record_sub_score(enrollment.id, 'Labs', number, value)
        print(f"  {code}: labs aggregate written={outcome.aggregate_written}, "
              f"final grade={ledger.rounded_final_grade(enrollment.id)}")


def demonstrate_gate(platform, data):
    course = data['course']
    rosa = data['students'][2]
    enrollment = data['enrollments'][rosa.code]
    for week in range(10):
        platform.attendance.record_session(rosa.id, course.id, date(2025, 3, 10) + timedelta(weeks=week),
                                           present=week < 5)
    batch = platform.ledger.record_scores(enrollment.id, {'Parcial 1': 12, 'Final Exam': 14})
    print(f"  Recorded: {batch.recorded}")
    for label, error in batch.rejected.items():
        print(f"  Rejected {label}: {error.message}")
    try:
        platform.ledger.record_score(enrollment.id, 'Final Exam', 14)
    except AttendanceGateViolation as e:
        print(f"  Direct submission also denied ({e.error_code})")


def demonstrate_reconfiguration(platform, data):
    course = data['course']
    scheme = platform.schemes.get_scheme(course.id)
    entries = [
        {'id': slot.type_id, 'label': 'P1' if slot.label == 'Parcial 1' else slot.label,
         'weight_percent': slot.weight_percent}
        for slot in scheme.slots
    ]
    result = platform.schemes.configure(course.id, entries, expected_version=scheme.version)
    print(f"  Renamed {result.renamed}, {result.migrated_entries} recorded scores migrated")


def demonstrate_period_transition(platform, term, data):
    periods = platform.periods
    try:
        periods.close_period(term.id)
    except IncompleteGradingError as e:
        print(f"  Close refused: {len(e.incomplete)} incomplete enrollment(s)")
    summary = periods.close_period(term.id, accept_incomplete=True)
    print(f"  Closed {summary.period_name}: {summary.courses_passed} passed, "
          f"{summary.courses_failed} failed, {summary.ungraded} ungraded")

    opening = periods.open_period(data['next_term'].id)
    print(f"  Opened {data['next_term'].name}: promoted {opening.promoted_count} students "
          f"{opening.cycle_histogram}")
    for entry in platform.ranking.rank_period(term.id):
        print(f"  #{entry.position} {entry.student_code} average {entry.period_average} {entry.band.value}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    run_demo()
