"""
Enumerations and constants for the Kardex grading engine.
"""

from enum import Enum


class EnrollmentStatus(Enum):
    """Status of an enrollment."""
    ENROLLED = "enrolled"
    WITHDRAWN = "withdrawn"
    AUTHORIZED = "authorized"


class PeriodState(Enum):
    """Lifecycle states of an academic period."""
    PLANNED = "planned"
    ACTIVE = "active"
    CLOSED = "closed"


class NotificationKind(Enum):
    """Kinds of user-facing notifications emitted by the engine."""
    SCHEME_CONFIGURED = "scheme_configured"
    GRADE_RECORDED = "grade_recorded"
    PERIOD_OPENED = "period_opened"
    PERIOD_CLOSED = "period_closed"


class MeritBand(Enum):
    """Merit standing bands derived from ranking position."""
    UPPER_TENTH = "upper_tenth"
    UPPER_FIFTH = "upper_fifth"
    UPPER_THIRD = "upper_third"
    NONE = ""
