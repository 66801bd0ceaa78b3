import threading
from datetime import date
from decimal import Decimal

import pytest

from kardex.core import InvalidStateTransition, NotFoundError, NotificationKind, ValidationError

from conftest import fill_default_scheme


def test_record_is_an_upsert(platform, enrollment):
    platform.ledger.record_score(enrollment.id, "Midterm1", 12)
    entry = platform.ledger.record_score(enrollment.id, "Midterm1", 17, notes="regraded")

    entries = platform.ledger.entries(enrollment.id)
    assert len(entries) == 1
    assert entries[0].id == entry.id
    assert entries[0].value == Decimal("17")
    assert entries[0].notes == "regraded"


def test_label_is_canonicalised_and_weight_taken_from_scheme(platform, enrollment):
    entry = platform.ledger.record_score(enrollment.id, " midterm1 ", 12)
    assert entry.evaluation_label == "Midterm1"
    assert entry.weight_percent == Decimal("10")


def test_explicit_weight_overrides_scheme(platform, enrollment):
    entry = platform.ledger.record_score(enrollment.id, "Labs", 12, weight_percent=25)
    assert entry.weight_percent == Decimal("25")


def test_unknown_label_needs_a_weight(platform, enrollment):
    with pytest.raises(ValidationError):
        platform.ledger.record_score(enrollment.id, "Quiz", 12)
    entry = platform.ledger.record_score(enrollment.id, "Quiz", 12, weight_percent=5)
    assert entry.evaluation_label == "Quiz"


@pytest.mark.parametrize("value", [-1, "20.5", "abc", None])
def test_invalid_values_are_rejected(platform, enrollment, value):
    with pytest.raises(ValidationError):
        platform.ledger.record_score(enrollment.id, "Midterm1", value)
    assert platform.ledger.entries(enrollment.id) == []


def test_unknown_enrollment(platform):
    with pytest.raises(NotFoundError):
        platform.ledger.record_score("missing", "Midterm1", 12)


def test_withdrawn_enrollment_is_read_only(platform, enrollment):
    platform.enrollments.withdraw(enrollment.id)
    with pytest.raises(ValidationError):
        platform.ledger.record_score(enrollment.id, "Midterm1", 12)


def test_closed_period_is_read_only(platform, enrollment, term):
    fill_default_scheme(platform, enrollment.id)
    platform.periods.close_period(term.id)
    with pytest.raises(InvalidStateTransition):
        platform.ledger.record_score(enrollment.id, "Midterm1", 20)


def test_final_grade_only_once_complete(platform, enrollment):
    platform.ledger.record_score(enrollment.id, "Midterm1", 15)
    platform.ledger.record_score(enrollment.id, "Labs", 18)

    assert platform.ledger.weighted_sum(enrollment.id) == Decimal("5.1")
    assert not platform.ledger.is_complete(enrollment.id)
    assert platform.ledger.rounded_final_grade(enrollment.id) is None
    report = platform.ledger.grade_report(enrollment.id)
    assert report.provisional_grade == 5
    assert report.rounded_final_grade is None
    assert not report.passes_rounded

    fill_default_scheme(platform, enrollment.id)

    assert platform.ledger.weighted_sum(enrollment.id) == Decimal("16.3")
    assert platform.ledger.rounded_final_grade(enrollment.id) == 16
    report = platform.ledger.grade_report(enrollment.id)
    assert report.is_complete and report.passes_rounded and report.passes_raw
    assert report.to_dict()['weighted_sum'] == "16.30"


def test_configured_scheme_grades(platform, course, enrollment):
    platform.schemes.configure(course.id, [{'label': 'A', 'weight_percent': 50},
                                           {'label': 'B', 'weight_percent': 50}])
    platform.ledger.record_score(enrollment.id, "A", 20)
    assert platform.ledger.weighted_sum(enrollment.id) == Decimal("10")
    assert platform.ledger.missing_labels(enrollment.id) == ["B"]

    platform.ledger.record_score(enrollment.id, "B", 0)
    assert platform.ledger.rounded_final_grade(enrollment.id) == 10


def test_batch_reports_each_label(platform, enrollment):
    batch = platform.ledger.record_scores(enrollment.id, {'Midterm1': 14, 'Labs': 25, 'Quiz': 10})

    assert not batch.success
    assert batch.recorded == ["Midterm1"]
    assert set(batch.rejected) == {"Labs", "Quiz"}
    assert all(isinstance(e, ValidationError) for e in batch.rejected.values())


def test_split_evaluation_writes_aggregate_when_complete(platform, course, enrollment):
    items = platform.ledger.split_evaluation(course.id, "Labs", 3,
                                             due_dates=[date(2025, 4, 1), date(2025, 5, 1), date(2025, 6, 1)])
    assert [i.individual_weight for i in items] == [Decimal("20") / 3] * 3

    first = platform.ledger.record_sub_score(enrollment.id, "Labs", 1, 12)
    second = platform.ledger.record_sub_score(enrollment.id, "Labs", 2, 15)
    assert not first.aggregate_written and not second.aggregate_written
    assert platform.ledger.entries(enrollment.id) == []

    third = platform.ledger.record_sub_score(enrollment.id, "Labs", 3, 18)
    assert third.scored_items == 3
    assert third.aggregate_entry.value == Decimal("15.00")
    assert third.aggregate_entry.weight_percent == Decimal("20")
    assert platform.ledger.weighted_sum(enrollment.id) == Decimal("3")


def test_correcting_a_part_refreshes_the_aggregate(platform, course, enrollment):
    platform.ledger.split_evaluation(course.id, "Labs", 2)
    platform.ledger.record_sub_score(enrollment.id, "Labs", 1, 10)
    platform.ledger.record_sub_score(enrollment.id, "Labs", 2, 14)

    result = platform.ledger.record_sub_score(enrollment.id, "Labs", 1, 20)

    assert result.aggregate_entry.value == Decimal("17.00")
    assert len(platform.ledger.entries(enrollment.id)) == 1


def test_unequal_part_weights(platform, course, enrollment):
    platform.ledger.register_sub_item(course.id, "Labs", 1, 2, individual_weight=5)
    platform.ledger.register_sub_item(course.id, "Labs", 2, 2, individual_weight=15)
    platform.ledger.record_sub_score(enrollment.id, "Labs", 1, 20)
    result = platform.ledger.record_sub_score(enrollment.id, "Labs", 2, 12)
    assert result.aggregate_entry.value == Decimal("14.00")


def test_sub_item_registration_rules(platform, course, enrollment):
    platform.ledger.register_sub_item(course.id, "Labs", 1, 3)
    with pytest.raises(ValidationError):
        platform.ledger.register_sub_item(course.id, "Labs", 1, 3)
    with pytest.raises(ValidationError):
        platform.ledger.register_sub_item(course.id, "Labs", 2, 4)
    with pytest.raises(ValidationError):
        platform.ledger.register_sub_item(course.id, "Quiz", 1, 2)
    with pytest.raises(NotFoundError):
        platform.ledger.record_sub_score(enrollment.id, "Labs", 2, 12)


@pytest.mark.parametrize("item_number, total_items", [(1, 0), (1, 11), (0, 3), (4, 3)])
def test_part_numbers_are_checked_before_registering(platform, course, item_number, total_items):
    with pytest.raises(ValidationError):
        platform.ledger.register_sub_item(course.id, "Labs", item_number, total_items)
    assert platform.repositories.split_items.for_label(course.id, "Labs") == []


def test_split_into_zero_parts_is_rejected(platform, course):
    with pytest.raises(ValidationError):
        platform.ledger.split_evaluation(course.id, "Labs", 0)


def test_split_label_only_takes_part_scores(platform, course, enrollment):
    platform.ledger.split_evaluation(course.id, "Labs", 3)
    platform.ledger.record_sub_score(enrollment.id, "Labs", 1, 18)

    with pytest.raises(ValidationError):
        platform.ledger.record_score(enrollment.id, "labs", 5)
    batch = platform.ledger.record_scores(enrollment.id, {'Labs': 5, 'Midterm1': 14})

    assert batch.recorded == ["Midterm1"]
    assert isinstance(batch.rejected["Labs"], ValidationError)
    assert [e.evaluation_label for e in platform.ledger.entries(enrollment.id)] == ["Midterm1"]


def test_direct_score_cannot_replace_split_average(platform, course, enrollment):
    platform.ledger.split_evaluation(course.id, "Labs", 2)
    platform.ledger.record_sub_score(enrollment.id, "Labs", 1, 10)
    platform.ledger.record_sub_score(enrollment.id, "Labs", 2, 14)

    with pytest.raises(ValidationError):
        platform.ledger.record_score(enrollment.id, "Labs", 20)

    [entry] = platform.ledger.entries(enrollment.id)
    assert entry.value == Decimal("12.00")


def test_gradebook_skips_withdrawn(platform, course, enrollment, make_enrollment):
    withdrawn = make_enrollment()
    platform.enrollments.withdraw(withdrawn.id)
    platform.ledger.record_score(enrollment.id, "Final", 14)

    gradebook = platform.ledger.course_gradebook(course.id)

    assert [r.enrollment_id for r in gradebook] == [enrollment.id]
    assert gradebook[0].missing_labels == ["Midterm1", "Midterm2", "Labs", "Midpoint", "Attitude",
                                           "Assignments"]


def test_period_statistics_use_raw_threshold(platform, course, term, make_enrollment):
    platform.schemes.configure(course.id, [{'label': 'Exam', 'weight_percent': 100}])
    just_passing = make_enrollment()
    just_failing = make_enrollment()
    make_enrollment()
    withdrawn = make_enrollment()
    platform.ledger.record_score(just_passing.id, "Exam", "10.5")
    platform.ledger.record_score(just_failing.id, "Exam", "10.4")
    platform.enrollments.withdraw(withdrawn.id)

    stats = platform.ledger.period_statistics(term.id)

    assert stats.enrollments == 4
    assert stats.withdrawn == 1
    assert stats.graded == 2
    assert stats.passing == 1
    assert stats.failing == 1
    assert stats.pass_rate == 50.0
    assert stats.courses[course.id].average == Decimal("10.45")


def test_grade_recorded_notification(platform, enrollment, sink):
    platform.ledger.record_score(enrollment.id, "Midterm1", 12)
    notified = sink.of_kind(NotificationKind.GRADE_RECORDED)
    assert len(notified) == 1
    assert notified[0].recipient_id == enrollment.student_id
    assert notified[0].payload['label'] == "Midterm1"


def test_concurrent_writes_leave_one_entry(platform, enrollment):
    values = [11, 13, 15, 17, 19]
    errors = []

    def submit(value):
        try:
            platform.ledger.record_score(enrollment.id, "Midterm1", value)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=submit, args=(v,)) for v in values]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    entries = platform.ledger.entries(enrollment.id)
    assert len(entries) == 1
    assert entries[0].value in {Decimal(v) for v in values}
