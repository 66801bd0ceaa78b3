"""
Repository pattern implementations over the in-memory data store.
"""

import copy
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from ..core.entities import (
    AbstractEntity, AcademicPeriod, Course, Enrollment, EvaluationType,
    GradeEntry, SplitEvaluationItem, Student, SubItemScore
)
from ..core.enums import PeriodState
from ..core.interfaces import Repository
from ..core.scoring import normalize_label
from .store import InMemoryDataStore

T = TypeVar('T', bound=AbstractEntity)


class BaseRepository(Repository[T], Generic[T]):
    """Base repository implementation with common functionality.

    Entities are copied on the way in and on the way out, so callers always
    work on detached objects and must ``save`` what they change.
    """

    def __init__(self, store: InMemoryDataStore, entity_type: str):
        self._store = store
        self._entity_type = entity_type

    @property
    def entity_type(self) -> str:
        return self._entity_type

    def _rows(self) -> Dict[str, T]:
        return self._store.table(self._entity_type)

    def save(self, entity: T) -> T:
        """Insert or update an entity."""
        with self._store.lock:
            self._rows()[entity.id] = copy.deepcopy(entity)
        return entity

    def save_all(self, entities: Iterable[T]) -> None:
        with self._store.transaction():
            for entity in entities:
                self.save(entity)

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID."""
        with self._store.lock:
            entity = self._rows().get(entity_id)
            return copy.deepcopy(entity) if entity is not None else None

    def exists(self, entity_id: str) -> bool:
        with self._store.lock:
            return entity_id in self._rows()

    def find_all(self, filters: Optional[Dict[str, Any]] = None) -> List[T]:
        """Find all entities whose attributes equal the given filters."""
        filters = filters or {}

        def matches(entity: T) -> bool:
            return all(getattr(entity, key, None) == value for key, value in filters.items())

        return self.query_by(matches)

    def query_by(self, predicate: Callable[[T], bool]) -> List[T]:
        """Find all entities matching a predicate, oldest first."""
        with self._store.lock:
            found = [copy.deepcopy(e) for e in self._rows().values() if predicate(e)]
        found.sort(key=lambda e: e.created_at)
        return found

    def delete(self, entity_id: str) -> bool:
        """Delete an entity by ID."""
        with self._store.lock:
            return self._rows().pop(entity_id, None) is not None

    def count(self) -> int:
        with self._store.lock:
            return len(self._rows())


class StudentRepository(BaseRepository[Student]):
    def __init__(self, store: InMemoryDataStore):
        super().__init__(store, "student")

    def find_by_code(self, code: str) -> Optional[Student]:
        found = self.query_by(lambda s: s.code == code)
        return found[0] if found else None


class CourseRepository(BaseRepository[Course]):
    def __init__(self, store: InMemoryDataStore):
        super().__init__(store, "course")


class EvaluationTypeRepository(BaseRepository[EvaluationType]):
    def __init__(self, store: InMemoryDataStore):
        super().__init__(store, "evaluation_type")

    def for_course(self, course_id: str) -> List[EvaluationType]:
        """Evaluation types of a course in display order."""
        types = self.query_by(lambda t: t.course_id == course_id)
        types.sort(key=lambda t: (t.display_order, t.label))
        return types


class GradeEntryRepository(BaseRepository[GradeEntry]):
    def __init__(self, store: InMemoryDataStore):
        super().__init__(store, "grade_entry")

    def for_enrollment(self, enrollment_id: str) -> List[GradeEntry]:
        return self.query_by(lambda g: g.enrollment_id == enrollment_id)

    def for_enrollments(self, enrollment_ids: Iterable[str]) -> List[GradeEntry]:
        wanted = set(enrollment_ids)
        return self.query_by(lambda g: g.enrollment_id in wanted)

    def find_by_label(self, enrollment_id: str, label: str) -> Optional[GradeEntry]:
        key = normalize_label(label)
        found = self.query_by(
            lambda g: g.enrollment_id == enrollment_id and normalize_label(g.evaluation_label) == key
        )
        return found[0] if found else None


class EnrollmentRepository(BaseRepository[Enrollment]):
    def __init__(self, store: InMemoryDataStore):
        super().__init__(store, "enrollment")

    def for_course(self, course_id: str, period_id: Optional[str] = None) -> List[Enrollment]:
        return self.query_by(
            lambda m: m.course_id == course_id and (period_id is None or m.period_id == period_id)
        )

    def for_period(self, period_id: str) -> List[Enrollment]:
        return self.query_by(lambda m: m.period_id == period_id)

    def for_student(self, student_id: str) -> List[Enrollment]:
        return self.query_by(lambda m: m.student_id == student_id)


class PeriodRepository(BaseRepository[AcademicPeriod]):
    def __init__(self, store: InMemoryDataStore):
        super().__init__(store, "academic_period")

    def find_active(self) -> List[AcademicPeriod]:
        return self.query_by(lambda p: p.state == PeriodState.ACTIVE)

    def find_by_name(self, name: str) -> Optional[AcademicPeriod]:
        key = name.strip().casefold()
        found = self.query_by(lambda p: p.name.strip().casefold() == key)
        return found[0] if found else None


class SplitItemRepository(BaseRepository[SplitEvaluationItem]):
    def __init__(self, store: InMemoryDataStore):
        super().__init__(store, "split_item")

    def for_label(self, course_id: str, label: str) -> List[SplitEvaluationItem]:
        key = normalize_label(label)
        items = self.query_by(
            lambda i: i.course_id == course_id and normalize_label(i.evaluation_label) == key
        )
        items.sort(key=lambda i: i.item_number)
        return items


class SubItemScoreRepository(BaseRepository[SubItemScore]):
    def __init__(self, store: InMemoryDataStore):
        super().__init__(store, "sub_item_score")

    def find(self, item_id: str, enrollment_id: str) -> Optional[SubItemScore]:
        found = self.query_by(lambda s: s.item_id == item_id and s.enrollment_id == enrollment_id)
        return found[0] if found else None


class RepositoryRegistry:
    """Holds one repository per entity type over a shared store."""

    def __init__(self, store: Optional[InMemoryDataStore] = None):
        self.store = store or InMemoryDataStore()
        self.students = StudentRepository(self.store)
        self.courses = CourseRepository(self.store)
        self.evaluation_types = EvaluationTypeRepository(self.store)
        self.grade_entries = GradeEntryRepository(self.store)
        self.enrollments = EnrollmentRepository(self.store)
        self.periods = PeriodRepository(self.store)
        self.split_items = SplitItemRepository(self.store)
        self.sub_item_scores = SubItemScoreRepository(self.store)

    def transaction(self):
        return self.store.transaction()
