from decimal import Decimal

import pytest

from kardex.core import MeritBand, NotFoundError
from kardex.services.ranking import credit_weighted_average, merit_band


def single_exam(platform, course):
    platform.schemes.configure(course.id, [{'label': 'Exam', 'weight_percent': 100}])


def test_credit_weighted_average():
    assert credit_weighted_average([(15, 4), (12, 2)]) == Decimal("14.00")
    assert credit_weighted_average([(13, 3), (14, 3), (14, 3)]) == Decimal("13.67")
    assert credit_weighted_average([]) is None
    assert credit_weighted_average([(15, 0)]) is None


@pytest.mark.parametrize("position, band", [
    (1, MeritBand.UPPER_TENTH),
    (2, MeritBand.UPPER_FIFTH),
    (3, MeritBand.UPPER_THIRD),
    (4, MeritBand.UPPER_THIRD),
    (5, MeritBand.NONE),
])
def test_merit_bands_of_ten(position, band):
    assert merit_band(position, 10) == band


def test_small_population_band():
    assert merit_band(1, 1) == MeritBand.UPPER_TENTH
    assert merit_band(1, 0) == MeritBand.NONE


def test_ties_share_a_position(platform, course, term, make_enrollment):
    single_exam(platform, course)
    scores = {"2025-D": 12, "2025-B": 15, "2025-A": 18, "2025-C": 15}
    for code, value in scores.items():
        platform.ledger.record_score(make_enrollment(code=code).id, "Exam", value)

    ranking = platform.ranking.rank_period(term.id)

    assert [(e.student_code, e.position) for e in ranking] == [
        ("2025-A", 1), ("2025-B", 2), ("2025-C", 2), ("2025-D", 4)
    ]
    assert ranking[0].band == MeritBand.UPPER_TENTH
    assert ranking[0].period_average == Decimal("18.00")
    assert ranking[3].credits_passed == 4
    assert ranking[0].cumulative_average is None


def test_incomplete_and_withdrawn_enrollments_are_not_ranked(platform, course, term, enrollment, make_enrollment):
    withdrawn = make_enrollment()
    platform.ledger.record_score(enrollment.id, "Midterm1", 20)
    platform.enrollments.withdraw(withdrawn.id)
    assert platform.ranking.rank_period(term.id) == []


def test_closed_period_ranks_on_frozen_grades(platform, course, term, next_term, make_enrollment):
    single_exam(platform, course)
    physics = platform.enrollments.register_course("FIS101", "Physics I", credits=2)
    single_exam(platform, physics)
    top = make_enrollment(code="2025-A")
    other = make_enrollment(code="2025-B")
    second = platform.enrollments.enroll(top.student_id, physics.id, term.id).enrollment
    platform.ledger.record_score(top.id, "Exam", 17)
    platform.ledger.record_score(second.id, "Exam", 11)
    platform.ledger.record_score(other.id, "Exam", "14.5")
    platform.periods.open_period(next_term.id)

    ranking = platform.ranking.rank_period(term.id)

    assert [e.student_code for e in ranking] == ["2025-A", "2025-B"]
    assert ranking[0].period_average == Decimal("15.00")
    assert ranking[0].credits_taken == 6
    assert ranking[0].cumulative_average == Decimal("15.00")
    assert ranking[0].current_cycle == 2
    assert ranking[1].period_average == Decimal("15.00")
    assert ranking[1].position == 1

    standing = platform.ranking.student_standing(other.student_id, term.id)
    assert standing.to_dict()['band'] == MeritBand.UPPER_TENTH.value


def test_unknown_period(platform):
    with pytest.raises(NotFoundError):
        platform.ranking.rank_period("missing")
