"""
Persistence module: in-memory data store and repositories.
"""

from .store import InMemoryDataStore
from .repositories import (
    BaseRepository, StudentRepository, CourseRepository, EvaluationTypeRepository,
    GradeEntryRepository, EnrollmentRepository, PeriodRepository,
    SplitItemRepository, SubItemScoreRepository, RepositoryRegistry
)

__all__ = [
    "InMemoryDataStore",
    "BaseRepository",
    "StudentRepository",
    "CourseRepository",
    "EvaluationTypeRepository",
    "GradeEntryRepository",
    "EnrollmentRepository",
    "PeriodRepository",
    "SplitItemRepository",
    "SubItemScoreRepository",
    "RepositoryRegistry",
]
