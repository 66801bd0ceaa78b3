"""
Core module containing the grading object model and value types.
"""

from .entities import *
from .interfaces import *
from .exceptions import *
from .enums import *
from .scoring import *
from .default_scheme import *

__all__ = [
    # Entities
    "AbstractEntity",
    "Student",
    "Course",
    "EvaluationType",
    "GradeEntry",
    "Enrollment",
    "AcademicPeriod",
    "SplitEvaluationItem",
    "SubItemScore",

    # Interfaces
    "Repository",
    "AttendanceStatistics",
    "AttendanceSummary",
    "Notification",
    "NotificationSink",

    # Scoring
    "WeightedScoreSet",
    "ScoreItem",
    "round_half_away_from_zero",
    "normalize_label",
    "to_decimal",
    "RAW_PASS_THRESHOLD",
    "ROUNDED_PASS_THRESHOLD",

    # Default scheme
    "DefaultSlot",
    "DEFAULT_EVALUATION_SCHEME",
    "default_slot_for",
    "default_weights",
    "final_exam_labels",

    # Enums
    "EnrollmentStatus",
    "PeriodState",
    "NotificationKind",
    "MeritBand",

    # Exceptions
    "KardexException",
    "ValidationError",
    "InvalidWeightTotal",
    "AttendanceGateViolation",
    "InvalidStateTransition",
    "NotFoundError",
    "ConflictingConfiguration",
    "IncompleteGradingError",
    "ConcurrencyError",
    "PersistenceError",
    "ConfigurationError",
]
