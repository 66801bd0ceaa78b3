"""
Evaluation scheme service: per-course weighted evaluation types and their
reconfiguration with retroactive migration of recorded scores.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..config import EngineSettings
from ..core.default_scheme import DEFAULT_EVALUATION_SCHEME
from ..core.entities import EvaluationType, GradeEntry
from ..core.enums import NotificationKind, PeriodState
from ..core.exceptions import (
    ConcurrencyError, ConflictingConfiguration, InvalidWeightTotal, NotFoundError, ValidationError
)
from ..core.scoring import HUNDRED, ZERO, normalize_label
from ..persistence.repositories import RepositoryRegistry
from .concurrency_manager import ConcurrencyManager, LockType, course_resource, current_holder
from .notification_service import NotificationService

logger = logging.getLogger(__name__)

# (new label, new weight, matched through the default alias table)
_Target = Tuple[str, Decimal, bool]


class SchemeEntryInput(BaseModel):
    """One row of a submitted evaluation scheme."""
    id: Optional[str] = None
    label: str = Field(..., min_length=1, max_length=100)
    weight_percent: Decimal = Field(..., ge=0, le=100)
    display_order: Optional[int] = Field(default=None, ge=0)
    active: bool = True

    @field_validator('label')
    @classmethod
    def _strip_label(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("label cannot be blank")
        return value


@dataclass(frozen=True)
class SchemeSlot:
    """A label and weight of a course's effective scheme."""
    label: str
    weight_percent: Decimal
    display_order: int
    active: bool = True
    type_id: Optional[str] = None


@dataclass
class EvaluationScheme:
    """Effective scheme of a course: its configured types, or the default scheme."""
    course_id: str
    slots: List[SchemeSlot]
    is_default: bool
    version: int = 0

    @property
    def active_slots(self) -> List[SchemeSlot]:
        return [s for s in self.slots if s.active]

    @property
    def required_labels(self) -> List[str]:
        return [s.label for s in self.active_slots]

    @property
    def total_weight(self) -> Decimal:
        return sum((s.weight_percent for s in self.active_slots), ZERO)

    def find(self, label: str) -> Optional[SchemeSlot]:
        key = normalize_label(label)
        for slot in self.slots:
            if normalize_label(slot.label) == key:
                return slot
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'course_id': self.course_id,
            'is_default': self.is_default,
            'version': self.version,
            'slots': [
                {'id': s.type_id, 'label': s.label, 'weight_percent': str(s.weight_percent),
                 'display_order': s.display_order, 'active': s.active}
                for s in self.slots
            ]
        }


@dataclass
class SchemeConfigurationResult:
    """Result of a scheme configuration."""
    course_id: str
    version: int
    scheme: EvaluationScheme
    created: List[str] = field(default_factory=list)
    renamed: Dict[str, str] = field(default_factory=dict)
    reweighted: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    migrated_entries: int = 0
    discarded_entries: int = 0
    alias_migrated_entries: int = 0
    collapsed_duplicates: int = 0
    first_configuration: bool = False


def check_weight_total(weights: Iterable[Decimal], tolerance: Decimal = Decimal("0.01")) -> Decimal:
    """Return the active weight total rounded to 2 places, or raise InvalidWeightTotal."""
    total = sum(weights, ZERO)
    rounded = total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if abs(rounded - HUNDRED) >= tolerance:
        raise InvalidWeightTotal(
            f"Active evaluation weights add up to {rounded}%, they must add up to 100%",
            details={'total': str(total)}
        )
    return rounded


class SchemeService:
    """Owns the evaluation types of every course."""

    def __init__(self, repositories: RepositoryRegistry, concurrency_manager: ConcurrencyManager,
                 notifications: NotificationService, settings: Optional[EngineSettings] = None):
        self._repos = repositories
        self._concurrency_manager = concurrency_manager
        self._notifications = notifications
        self._settings = settings or EngineSettings()

    def get_scheme(self, course_id: str) -> EvaluationScheme:
        """The course's configured scheme, or the default scheme when none was configured."""
        if not self._repos.courses.exists(course_id):
            raise NotFoundError(f"Course {course_id} not found", details={'course_id': course_id})
        version = self.scheme_version(course_id)
        types = self._repos.evaluation_types.for_course(course_id)
        if not types:
            return EvaluationScheme(
                course_id=course_id,
                slots=[SchemeSlot(s.label, s.weight_percent, s.display_order)
                       for s in DEFAULT_EVALUATION_SCHEME],
                is_default=True,
                version=version
            )
        return EvaluationScheme(
            course_id=course_id,
            slots=[SchemeSlot(t.label, t.weight_percent, t.display_order, t.active, t.id) for t in types],
            is_default=False,
            version=version
        )

    def scheme_version(self, course_id: str) -> int:
        return self._concurrency_manager.get_version(course_resource(course_id))

    def configure(self, course_id: str, entries: List[Union[SchemeEntryInput, Dict[str, Any]]],
                  expected_version: Optional[int] = None) -> SchemeConfigurationResult:
        """Replace a course's scheme, migrating recorded scores in the same unit of work."""
        if not self._repos.courses.exists(course_id):
            raise NotFoundError(f"Course {course_id} not found", details={'course_id': course_id})

        rows = self._parse_entries(entries)
        check_weight_total((r.weight_percent for r in rows if r.active), self._settings.weight_tolerance)

        resource = course_resource(course_id)
        try:
            lock_id = self._concurrency_manager.acquire_lock(
                resource, LockType.WRITE, current_holder("scheme_service")
            )
        except ConcurrencyError as e:
            raise ConflictingConfiguration(
                f"The evaluation scheme of course {course_id} is being edited concurrently",
                details={'course_id': course_id}
            ) from e

        try:
            if expected_version is not None and not self._concurrency_manager.check_version(resource, expected_version):
                raise ConflictingConfiguration(
                    f"The evaluation scheme of course {course_id} changed since version {expected_version}",
                    details={'course_id': course_id,
                             'expected_version': expected_version,
                             'current_version': self._concurrency_manager.get_version(resource)}
                )
            with self._repos.transaction():
                result = self._apply(course_id, rows)
            result.version = self._concurrency_manager.increment_version(resource)
            result.scheme = self.get_scheme(course_id)
        finally:
            self._concurrency_manager.release_lock(lock_id)

        logger.info("Configured scheme of course %s (version %d): %d created, %d renamed, "
                    "%d removed, %d entries migrated, %d discarded",
                    course_id, result.version, len(result.created), len(result.renamed),
                    len(result.removed), result.migrated_entries, result.discarded_entries)
        self._notify_students(course_id, result)
        return result

    def _parse_entries(self, entries: List[Union[SchemeEntryInput, Dict[str, Any]]]) -> List[SchemeEntryInput]:
        if not entries:
            raise ValidationError("An evaluation scheme needs at least one evaluation type")
        rows = []
        for position, entry in enumerate(entries):
            try:
                row = entry if isinstance(entry, SchemeEntryInput) else SchemeEntryInput.model_validate(entry)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Evaluation type #{position + 1} is malformed",
                    details={'position': position, 'errors': [
                        {'field': '.'.join(str(p) for p in err['loc']), 'message': err['msg']}
                        for err in e.errors()
                    ]}
                ) from e
            rows.append(row)

        seen: Dict[str, str] = {}
        for row in rows:
            key = normalize_label(row.label)
            if key in seen:
                raise ValidationError(
                    f"Duplicate evaluation label '{row.label}'",
                    details={'label': row.label, 'conflicts_with': seen[key]}
                )
            seen[key] = row.label

        ids = [row.id for row in rows if row.id]
        if len(ids) != len(set(ids)):
            raise ValidationError("The same evaluation type id appears twice")
        return rows

    def _apply(self, course_id: str, rows: List[SchemeEntryInput]) -> SchemeConfigurationResult:
        existing = {t.id: t for t in self._repos.evaluation_types.for_course(course_id)}
        unknown = [row.id for row in rows if row.id and row.id not in existing]
        if unknown:
            raise ValidationError(
                "Evaluation type ids do not belong to this course",
                details={'course_id': course_id, 'ids': unknown}
            )

        enrollment_ids = [e.id for e in self._repos.enrollments.for_course(course_id)]
        entries = self._repos.grade_entries.for_enrollments(enrollment_ids)
        result = SchemeConfigurationResult(
            course_id=course_id, version=0,
            scheme=EvaluationScheme(course_id, [], False),
            first_configuration=not existing
        )

        kept_ids = {row.id for row in rows if row.id}
        removed_types = [t for t in existing.values() if t.id not in kept_ids]
        removed_keys = {normalize_label(t.label) for t in removed_types}
        discarded = [e for e in entries if normalize_label(e.evaluation_label) in removed_keys]
        if discarded:
            if not self._settings.allow_score_discard:
                raise ValidationError(
                    "Removing these evaluation types would discard recorded scores",
                    details={'labels': sorted({e.evaluation_label for e in discarded}),
                             'entries': len(discarded)}
                )
            logger.warning("Discarding %d recorded scores of removed evaluation types %s in course %s",
                           len(discarded), sorted(t.label for t in removed_types), course_id)
        for entry in discarded:
            self._repos.grade_entries.delete(entry.id)
        result.discarded_entries = len(discarded)
        result.removed = [t.label for t in removed_types]
        for evaluation_type in removed_types:
            self._repos.evaluation_types.delete(evaluation_type.id)

        remaining = [e for e in entries if normalize_label(e.evaluation_label) not in removed_keys]
        if existing:
            resolve = self._rename_resolver(existing, rows, result)
        else:
            resolve = self._default_resolver(rows)
        touched = self._migrate_entries(remaining, resolve, result)
        result.collapsed_duplicates = self._collapse_duplicates(touched, remaining)
        self._migrate_split_items(course_id, removed_keys, resolve)

        for position, row in enumerate(rows):
            order = row.display_order if row.display_order is not None else position + 1
            if row.id:
                evaluation_type = existing[row.id]
                evaluation_type.reconfigure(row.label, row.weight_percent, order, row.active)
            else:
                evaluation_type = EvaluationType(course_id, row.label, row.weight_percent, order, row.active)
                result.created.append(row.label)
            self._repos.evaluation_types.save(evaluation_type)
        return result

    @staticmethod
    def _rename_resolver(existing: Dict[str, EvaluationType], rows: List[SchemeEntryInput],
                         result: SchemeConfigurationResult) -> Callable[[str], Optional[_Target]]:
        """Map old labels of renamed or reweighted types to their new label and weight.

        The mapping is built in full before any entry is touched, so swapping two
        labels moves each entry exactly once.
        """
        mapping: Dict[str, _Target] = {}
        for row in rows:
            if not row.id:
                continue
            old = existing[row.id]
            if old.label != row.label:
                result.renamed[old.label] = row.label
            elif old.weight_percent != row.weight_percent:
                result.reweighted.append(row.label)
            else:
                continue
            mapping[normalize_label(old.label)] = (row.label, row.weight_percent, False)
        return lambda label: mapping.get(normalize_label(label))

    @staticmethod
    def _default_resolver(rows: List[SchemeEntryInput]) -> Callable[[str], Optional[_Target]]:
        """Map labels recorded under the default scheme to the first configuration.

        A label equal to a new label keeps it; otherwise the n-th new row takes the
        labels that are aliases of the n-th default slot.
        """
        by_label = {normalize_label(row.label): row for row in rows}
        positional = list(zip(rows, DEFAULT_EVALUATION_SCHEME))

        def resolve(label: str) -> Optional[_Target]:
            row = by_label.get(normalize_label(label))
            if row is not None:
                return row.label, row.weight_percent, False
            for candidate, slot in positional:
                if slot.matches(label):
                    return candidate.label, candidate.weight_percent, True
            return None

        return resolve

    def _migrate_entries(self, entries: List[GradeEntry], resolve: Callable[[str], Optional[_Target]],
                         result: SchemeConfigurationResult) -> List[GradeEntry]:
        """Rewrite labels and weight snapshots; returns every entry mapped to a new label."""
        touched = []
        for entry in entries:
            target = resolve(entry.evaluation_label)
            if target is None:
                continue
            label, weight, aliased = target
            touched.append(entry)
            if entry.evaluation_label == label and entry.weight_percent == weight:
                continue
            if entry.evaluation_label != label:
                entry.relabel(label, weight)
            else:
                entry.reweight(weight)
            self._repos.grade_entries.save(entry)
            result.migrated_entries += 1
            if aliased:
                result.alias_migrated_entries += 1
        return touched

    def _migrate_split_items(self, course_id: str, removed_keys: Set[str],
                             resolve: Callable[[str], Optional[_Target]]) -> None:
        for item in self._repos.split_items.query_by(lambda i: i.course_id == course_id):
            if normalize_label(item.evaluation_label) in removed_keys:
                item_id = item.id
                for score in self._repos.sub_item_scores.query_by(lambda s: s.item_id == item_id):
                    self._repos.sub_item_scores.delete(score.id)
                self._repos.split_items.delete(item_id)
                continue
            target = resolve(item.evaluation_label)
            if target is not None and target[0] != item.evaluation_label:
                item.relabel(target[0])
                self._repos.split_items.save(item)

    def _collapse_duplicates(self, touched: List[GradeEntry], entries: List[GradeEntry]) -> int:
        """Keep only the most recently recorded entry per enrollment and label."""
        if not touched:
            return 0
        groups: Dict[Tuple[str, str], List[GradeEntry]] = defaultdict(list)
        for entry in entries:
            groups[(entry.enrollment_id, normalize_label(entry.evaluation_label))].append(entry)

        touched_ids = {e.id for e in touched}
        collapsed = 0
        for group in groups.values():
            if len(group) < 2 or not any(e.id in touched_ids for e in group):
                continue
            group.sort(key=lambda e: e.recorded_at, reverse=True)
            for stale in group[1:]:
                self._repos.grade_entries.delete(stale.id)
                collapsed += 1
        if collapsed:
            logger.warning("Collapsed %d duplicate grade entries after label migration", collapsed)
        return collapsed

    def _notify_students(self, course_id: str, result: SchemeConfigurationResult) -> None:
        course = self._repos.courses.find_by_id(course_id)
        open_periods = {p.id for p in self._repos.periods.query_by(lambda p: p.state != PeriodState.CLOSED)}
        students = {
            e.student_id for e in self._repos.enrollments.for_course(course_id)
            if not e.is_withdrawn and e.period_id in open_periods
        }
        payload = {
            'course_id': course_id,
            'course_name': course.name if course else None,
            'version': result.version,
            'scheme': result.scheme.to_dict()['slots']
        }
        for student_id in sorted(students):
            self._notifications.notify(NotificationKind.SCHEME_CONFIGURED, payload, recipient_id=student_id)
