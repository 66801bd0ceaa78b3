from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from kardex.config import EngineSettings
from kardex.core import (
    ConflictingConfiguration, GradeEntry, InvalidWeightTotal, NotFoundError, NotificationKind,
    ValidationError
)
from kardex.main import KardexPlatform
from kardex.services.concurrency_manager import LockType, course_resource
from kardex.services.scheme_service import check_weight_total


def configure(platform, course, rows, **kwargs):
    return platform.schemes.configure(course.id, [
        {'label': label, 'weight_percent': weight} for label, weight in rows
    ], **kwargs)


def entries_by_label(platform, enrollment):
    return {e.evaluation_label: e for e in platform.ledger.entries(enrollment.id)}


def reconfigured(scheme, **changes):
    """Rows resubmitting every slot of ``scheme`` by id, with per-label edits."""
    rows = []
    for slot in scheme.slots:
        label, weight = changes.get(slot.label, (slot.label, slot.weight_percent))
        rows.append({'id': slot.type_id, 'label': label, 'weight_percent': weight})
    return rows


def test_unconfigured_course_uses_default_scheme(platform, course):
    scheme = platform.schemes.get_scheme(course.id)
    assert scheme.is_default
    assert scheme.required_labels == [
        "Midterm1", "Midterm2", "Labs", "Midpoint", "Final", "Attitude", "Assignments"
    ]
    assert scheme.total_weight == Decimal("100")


def test_unknown_course(platform):
    with pytest.raises(NotFoundError):
        platform.schemes.get_scheme("missing")
    with pytest.raises(NotFoundError):
        platform.schemes.configure("missing", [{'label': 'A', 'weight_percent': 100}])


@pytest.mark.parametrize("weights", [["50", "49.99"], ["60", "40.02"], ["50", "40"]])
def test_weights_off_100_are_rejected(platform, course, weights):
    with pytest.raises(InvalidWeightTotal):
        configure(platform, course, zip(("A", "B"), weights))
    assert platform.schemes.get_scheme(course.id).is_default


@pytest.mark.parametrize("weights", [["50", "50"], ["50", "49.995"], ["33.33", "66.67"]])
def test_weights_summing_to_100_are_accepted(platform, course, weights):
    result = configure(platform, course, zip(("A", "B"), weights))
    assert result.first_configuration
    assert not hasattr(result, "success")
    assert [s.label for s in result.scheme.slots] == ["A", "B"]


def test_weight_total_is_rounded_to_cents():
    assert check_weight_total([Decimal("50"), Decimal("49.995")]) == Decimal("100.00")


def test_exact_total_passes_a_tight_tolerance():
    tolerance = EngineSettings(weight_tolerance="0.001").weight_tolerance
    assert check_weight_total([Decimal("100")], tolerance) == Decimal("100.00")
    with pytest.raises(InvalidWeightTotal):
        check_weight_total([Decimal("99.99")], tolerance)


def test_inactive_types_are_excluded_from_total(platform, course):
    result = platform.schemes.configure(course.id, [
        {'label': 'A', 'weight_percent': 60},
        {'label': 'B', 'weight_percent': 40},
        {'label': 'Bonus', 'weight_percent': 10, 'active': False},
    ])
    assert result.scheme.required_labels == ["A", "B"]
    assert result.scheme.find("bonus").active is False


def test_duplicate_labels_are_rejected(platform, course):
    with pytest.raises(ValidationError) as excinfo:
        configure(platform, course, [("Final", 50), ("final ", 50)])
    assert excinfo.value.details['label'] == "final"


def test_malformed_row_is_rejected(platform, course):
    with pytest.raises(ValidationError) as excinfo:
        platform.schemes.configure(course.id, [{'label': 'A', 'weight_percent': 'lots'}])
    assert excinfo.value.details['position'] == 0


def test_empty_scheme_is_rejected(platform, course):
    with pytest.raises(ValidationError):
        platform.schemes.configure(course.id, [])


def test_unknown_type_id_is_rejected(platform, course):
    configure(platform, course, [("A", 100)])
    with pytest.raises(ValidationError):
        platform.schemes.configure(course.id, [{'id': 'not-a-type', 'label': 'A', 'weight_percent': 100}])


def test_rename_migrates_recorded_scores(platform, course, enrollment):
    scheme = configure(platform, course, [("Parcial 1", 40), ("Final", 60)]).scheme
    platform.ledger.record_score(enrollment.id, "Parcial 1", 14)

    result = platform.schemes.configure(course.id, reconfigured(scheme, **{'Parcial 1': ("P1", 40)}))

    assert result.renamed == {"Parcial 1": "P1"}
    assert result.migrated_entries == 1
    entries = entries_by_label(platform, enrollment)
    assert list(entries) == ["P1"]
    assert entries["P1"].value == Decimal("14")
    assert platform.ledger.missing_labels(enrollment.id) == ["Final"]


def test_reweight_refreshes_weight_snapshot_only(platform, course, enrollment):
    scheme = configure(platform, course, [("A", 40), ("B", 60)]).scheme
    platform.ledger.record_score(enrollment.id, "A", 15)

    result = platform.schemes.configure(course.id, reconfigured(scheme, A=("A", 30), B=("B", 70)))

    assert result.reweighted == ["A", "B"]
    entry = entries_by_label(platform, enrollment)["A"]
    assert entry.weight_percent == Decimal("30")
    assert entry.value == Decimal("15")
    assert platform.ledger.weighted_sum(enrollment.id) == Decimal("4.5")


def test_swapping_labels_moves_each_entry_once(platform, course, enrollment):
    scheme = configure(platform, course, [("A", 30), ("B", 70)]).scheme
    platform.ledger.record_score(enrollment.id, "A", 10)
    platform.ledger.record_score(enrollment.id, "B", 20)

    platform.schemes.configure(course.id, reconfigured(scheme, A=("B", 30), B=("A", 70)))

    entries = entries_by_label(platform, enrollment)
    assert entries["B"].value == Decimal("10")
    assert entries["B"].weight_percent == Decimal("30")
    assert entries["A"].value == Decimal("20")
    assert entries["A"].weight_percent == Decimal("70")


def test_removed_type_discards_its_scores(platform, course, enrollment):
    scheme = configure(platform, course, [("A", 50), ("B", 50)]).scheme
    platform.ledger.record_score(enrollment.id, "A", 12)
    platform.ledger.record_score(enrollment.id, "B", 16)

    rows = [{'id': scheme.find("A").type_id, 'label': "A", 'weight_percent': 100}]
    result = platform.schemes.configure(course.id, rows)

    assert result.removed == ["B"]
    assert result.discarded_entries == 1
    assert list(entries_by_label(platform, enrollment)) == ["A"]


def test_discard_can_be_forbidden(sink, attendance):
    platform = KardexPlatform(EngineSettings(allow_score_discard=False), attendance=attendance, sinks=[sink])
    period = platform.periods.create_period("2025-I", 2025, "I", date(2025, 3, 1), date(2025, 7, 1))
    platform.periods.open_period(period.id)
    course = platform.enrollments.register_course("FIS101", "Physics I")
    student = platform.enrollments.register_student("2025-0009")
    enrollment = platform.enrollments.enroll(student.id, course.id, period.id).enrollment
    scheme = configure(platform, course, [("A", 50), ("B", 50)]).scheme
    platform.ledger.record_score(enrollment.id, "B", 16)

    with pytest.raises(ValidationError):
        platform.schemes.configure(course.id, [{'id': scheme.find("A").type_id, 'label': "A",
                                                'weight_percent': 100}])

    assert [s.label for s in platform.schemes.get_scheme(course.id).slots] == ["A", "B"]
    assert "B" in entries_by_label(platform, enrollment)


def test_first_configuration_folds_legacy_labels(platform, course, enrollment):
    platform.ledger.record_score(enrollment.id, "Parcial 1", 13, weight_percent=10)
    platform.ledger.record_score(enrollment.id, "Midterm2", 15)

    rows = [("Exam 1", 10), ("Exam 2", 10), ("Labs", 20), ("Midpoint", 20),
            ("Final", 20), ("Attitude", 5), ("Assignments", 15)]
    result = configure(platform, course, rows)

    assert result.first_configuration
    assert result.alias_migrated_entries == 2
    entries = entries_by_label(platform, enrollment)
    assert entries["Exam 1"].value == Decimal("13")
    assert entries["Exam 2"].value == Decimal("15")
    assert "Parcial 1" not in entries


def test_alias_duplicates_collapse_to_latest(platform, course, enrollment):
    now = datetime.now(timezone.utc)
    grades = platform.repositories.grade_entries
    grades.save(GradeEntry(enrollment.id, "EP1", 9, 10, recorded_at=now - timedelta(days=2)))
    grades.save(GradeEntry(enrollment.id, "Parcial 1", 14, 10, recorded_at=now - timedelta(days=1)))

    result = configure(platform, course, [("Exam 1", 50), ("Exam 2", 50)])

    assert result.collapsed_duplicates == 1
    entries = platform.ledger.entries(enrollment.id)
    assert len(entries) == 1
    assert entries[0].evaluation_label == "Exam 1"
    assert entries[0].value == Decimal("14")
    assert entries[0].weight_percent == Decimal("50")


def test_stale_version_is_a_conflict(platform, course):
    scheme = configure(platform, course, [("A", 100)]).scheme
    assert scheme.version == 1
    platform.schemes.configure(course.id, reconfigured(scheme, A=("A1", 100)), expected_version=1)

    with pytest.raises(ConflictingConfiguration) as excinfo:
        platform.schemes.configure(course.id, reconfigured(scheme, A=("A2", 100)), expected_version=1)
    assert excinfo.value.details['current_version'] == 2


def test_concurrent_edit_is_a_conflict(platform, course):
    manager = platform.concurrency_manager
    lock_id = manager.acquire_lock(course_resource(course.id), LockType.WRITE, "another-editor")
    try:
        with pytest.raises(ConflictingConfiguration):
            configure(platform, course, [("A", 100)])
    finally:
        manager.release_lock(lock_id)
    assert configure(platform, course, [("A", 100)]).version == 1


def test_failed_configuration_changes_nothing(platform, course, enrollment, monkeypatch):
    scheme = configure(platform, course, [("Parcial 1", 40), ("Final", 60)]).scheme
    platform.ledger.record_score(enrollment.id, "Parcial 1", 14)

    def broken_save(entity):
        raise RuntimeError("disk full")

    monkeypatch.setattr(platform.repositories.evaluation_types, "save", broken_save)
    with pytest.raises(RuntimeError):
        platform.schemes.configure(course.id, reconfigured(scheme, **{'Parcial 1': ("P1", 40)}))
    monkeypatch.undo()

    assert list(entries_by_label(platform, enrollment)) == ["Parcial 1"]
    assert [s.label for s in platform.schemes.get_scheme(course.id).slots] == ["Parcial 1", "Final"]
    assert platform.schemes.scheme_version(course.id) == 1


def test_rename_relabels_split_parts(platform, course, enrollment):
    scheme = configure(platform, course, [("Labs", 30), ("Final", 70)]).scheme
    platform.ledger.split_evaluation(course.id, "Labs", 2)

    platform.schemes.configure(course.id, reconfigured(scheme, Labs=("Practicas", 30)))

    assert platform.repositories.split_items.for_label(course.id, "Labs") == []
    assert len(platform.repositories.split_items.for_label(course.id, "Practicas")) == 2
    result = platform.ledger.record_sub_score(enrollment.id, "Practicas", 1, 12)
    assert result.scored_items == 1


def test_students_are_notified(platform, course, enrollment, make_enrollment, sink):
    withdrawn = make_enrollment()
    platform.enrollments.withdraw(withdrawn.id)

    configure(platform, course, [("A", 100)])

    notified = sink.of_kind(NotificationKind.SCHEME_CONFIGURED)
    assert [n.recipient_id for n in notified] == [enrollment.student_id]
    assert notified[0].payload['scheme'][0]['label'] == "A"
