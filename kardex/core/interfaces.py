"""
Interfaces to the collaborators the grading engine consumes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from .enums import NotificationKind


T = TypeVar('T')


class Repository(ABC, Generic[T]):
    """Abstract base class for repositories."""

    @abstractmethod
    def save(self, entity: T) -> T:
        """Insert or update an entity."""
        pass

    @abstractmethod
    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID."""
        pass

    @abstractmethod
    def find_all(self, filters: Optional[Dict[str, Any]] = None) -> List[T]:
        """Find all entities whose attributes equal the given filters."""
        pass

    @abstractmethod
    def query_by(self, predicate: Callable[[T], bool]) -> List[T]:
        """Find all entities matching a predicate."""
        pass

    @abstractmethod
    def delete(self, entity_id: str) -> bool:
        """Delete an entity by ID."""
        pass


@dataclass(frozen=True)
class AttendanceSummary:
    """Attendance figures for one student in one course."""
    total_sessions: int
    present_sessions: int
    blocking_message: str = ""

    @property
    def is_blocked(self) -> bool:
        return bool(self.blocking_message)

    @property
    def attendance_percent(self) -> float:
        if self.total_sessions == 0:
            return 0.0
        return round(self.present_sessions * 100.0 / self.total_sessions, 2)


class AttendanceStatistics(ABC):
    """Source of attendance summaries. Owns the threshold and its formula."""

    @abstractmethod
    def get_attendance_summary(self, student_id: str, course_id: str) -> AttendanceSummary:
        """Summarise a student's attendance in a course."""
        pass


@dataclass
class Notification:
    """Fire-and-forget message for an external delivery collaborator."""
    kind: NotificationKind
    payload: Dict[str, Any]
    recipient_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_broadcast(self) -> bool:
        return self.recipient_id is None


class NotificationSink(ABC):
    """Delivery channel for notifications (event bus, push hub, mailer...)."""

    @abstractmethod
    def deliver(self, notification: Notification) -> None:
        """Hand a notification over for delivery."""
        pass
