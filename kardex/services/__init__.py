"""
Services module containing the grading engine components.
"""

from .concurrency_manager import ConcurrencyManager, LockType
from .notification_service import NotificationService, InMemoryNotificationSink
from .attendance import AttendanceRegister
from .eligibility import EligibilityGate
from .enrollment_service import EnrollmentService, EnrollmentResult
from .scheme_service import SchemeService, SchemeEntryInput, SchemeConfigurationResult, EvaluationScheme
from .ledger_service import LedgerService, ScoreSubmission, ScoreBatchResult, FinalGradeReport
from .period_service import (
    PeriodService, PeriodOpeningResult, PeriodClosingSummary, ClosureValidation
)
from .ranking import MeritRanking, MeritEntry

__all__ = [
    "ConcurrencyManager",
    "LockType",
    "NotificationService",
    "InMemoryNotificationSink",
    "AttendanceRegister",
    "EligibilityGate",
    "EnrollmentService",
    "EnrollmentResult",
    "SchemeService",
    "SchemeEntryInput",
    "SchemeConfigurationResult",
    "EvaluationScheme",
    "LedgerService",
    "ScoreSubmission",
    "ScoreBatchResult",
    "FinalGradeReport",
    "PeriodService",
    "PeriodOpeningResult",
    "PeriodClosingSummary",
    "ClosureValidation",
    "MeritRanking",
    "MeritEntry",
]
