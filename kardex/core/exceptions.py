"""
Custom exceptions for the Kardex grading engine.
"""

from typing import Optional, Any, Dict, List


class KardexException(Exception):
    """Base exception for all Kardex-related errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    default_code = "kardex_error"

    def to_dict(self) -> Dict[str, Any]:
        """Structured, human-readable form handed back to callers."""
        return {
            'error': self.error_code,
            'message': self.message,
            'details': self.details
        }


class ValidationError(KardexException):
    """Raised when input data has the wrong shape or range."""
    default_code = "validation_error"


class InvalidWeightTotal(ValidationError):
    """Raised when active evaluation weights do not add up to 100%."""
    default_code = "invalid_weight_total"


class AttendanceGateViolation(KardexException):
    """Raised when a gated evaluation is recorded for a student the attendance gate blocks."""
    default_code = "attendance_gate_violation"


class InvalidStateTransition(KardexException):
    """Raised when a period lifecycle transition is not allowed."""
    default_code = "invalid_state_transition"


class NotFoundError(KardexException):
    """Raised when a requested course, enrollment or period does not exist."""
    default_code = "not_found"


class ConflictingConfiguration(KardexException):
    """Raised when a concurrent evaluation scheme edit is detected."""
    default_code = "conflicting_configuration"


class IncompleteGradingError(KardexException):
    """Raised when a period is closed while required grade entries are missing."""
    default_code = "incomplete_grading"

    def __init__(self, message: str, incomplete: List[Dict[str, Any]], **kwargs):
        details = kwargs.pop('details', None) or {}
        details['incomplete'] = incomplete
        super().__init__(message, details=details, **kwargs)
        self.incomplete = incomplete


class ConcurrencyError(KardexException):
    """Raised when concurrency control fails."""
    default_code = "concurrency_error"


class PersistenceError(KardexException):
    """Raised when persistence operations fail."""
    default_code = "persistence_error"


class ConfigurationError(KardexException):
    """Raised when engine configuration is invalid."""
    default_code = "configuration_error"
