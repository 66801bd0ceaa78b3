"""
Main entry point for the Kardex grading engine.
"""

import json
import logging
import sys
from datetime import date
from typing import Any, Dict, List, Optional, Union

from .config import EngineSettings, load_settings
from .core.default_scheme import DEFAULT_EVALUATION_SCHEME
from .core.exceptions import KardexException
from .core.interfaces import AttendanceStatistics, NotificationSink
from .persistence import InMemoryDataStore, RepositoryRegistry
from .services import (
    AttendanceRegister, ConcurrencyManager, EligibilityGate, EnrollmentService, InMemoryNotificationSink,
    LedgerService, MeritRanking, NotificationService, PeriodService, SchemeService
)

logger = logging.getLogger(__name__)


class KardexPlatform:
    """Wires the engine's services around one data store."""

    def __init__(self, settings: Optional[Union[EngineSettings, Dict[str, Any]]] = None,
                 attendance: Optional[AttendanceStatistics] = None,
                 sinks: Optional[List[NotificationSink]] = None,
                 store: Optional[InMemoryDataStore] = None):
        if isinstance(settings, dict):
            settings = load_settings(overrides=settings)
        self._settings = settings or EngineSettings()
        self._initialize_platform(attendance, sinks, store)

    def _initialize_platform(self, attendance, sinks, store):
        """Initialize the platform with all services."""
        settings = self._settings
        self._repositories = RepositoryRegistry(store)
        self._concurrency_manager = ConcurrencyManager(default_wait=settings.lock_wait_timeout)
        self._notification_sink = None
        if sinks is None:
            self._notification_sink = InMemoryNotificationSink()
            sinks = [self._notification_sink]
        self._notifications = NotificationService(sinks)
        self._attendance = attendance or AttendanceRegister(settings.min_attendance_percent)
        self._gate = EligibilityGate(self._attendance, settings.gated_labels)

        self._enrollments = EnrollmentService(self._repositories, self._concurrency_manager, settings)
        self._schemes = SchemeService(self._repositories, self._concurrency_manager,
                                      self._notifications, settings)
        self._ledger = LedgerService(self._repositories, self._concurrency_manager, self._schemes,
                                     self._gate, self._notifications, settings)
        self._periods = PeriodService(self._repositories, self._concurrency_manager, self._ledger,
                                      self._notifications, settings)
        self._ranking = MeritRanking(self._repositories, self._ledger, settings)
        logger.debug("Kardex platform initialized with %d notification sinks", len(sinks))

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def repositories(self) -> RepositoryRegistry:
        return self._repositories

    @property
    def concurrency_manager(self) -> ConcurrencyManager:
        return self._concurrency_manager

    @property
    def notifications(self) -> NotificationService:
        return self._notifications

    @property
    def notification_sink(self) -> Optional[InMemoryNotificationSink]:
        """The built-in sink, when no sinks were supplied."""
        return self._notification_sink

    @property
    def attendance(self) -> AttendanceStatistics:
        return self._attendance

    @property
    def gate(self) -> EligibilityGate:
        return self._gate

    @property
    def enrollments(self) -> EnrollmentService:
        return self._enrollments

    @property
    def schemes(self) -> SchemeService:
        return self._schemes

    @property
    def ledger(self) -> LedgerService:
        return self._ledger

    @property
    def periods(self) -> PeriodService:
        return self._periods

    @property
    def ranking(self) -> MeritRanking:
        return self._ranking

    def run_demo(self) -> Dict[str, Any]:
        """Grade one student through a full term and open the next one."""
        print("Running Kardex demonstration...")
        first = self._periods.create_period("2024-I", 2024, "I", date(2024, 3, 1), date(2024, 7, 15))
        second = self._periods.create_period("2024-II", 2024, "II", date(2024, 8, 15), date(2024, 12, 20))
        self._periods.open_period(first.id)

        course = self._enrollments.register_course("MAT101", "Calculus I", credits=4)
        student = self._enrollments.register_student("2024-0001", "Ana Quispe")
        enrollment = self._enrollments.enroll(student.id, course.id, first.id).enrollment

        scores = dict(zip((slot.label for slot in DEFAULT_EVALUATION_SCHEME), (15, 14, 18, 16, 17, 19, 15)))
        batch = self._ledger.record_scores(enrollment.id, scores)
        report = self._ledger.grade_report(enrollment.id)
        print("\n=== Grade Report ===")
        print(f"Recorded: {', '.join(batch.recorded)}")
        print(f"Weighted sum: {report.weighted_sum}  Final grade: {report.rounded_final_grade}  "
              f"Pass: {report.passes_rounded}")

        opening = self._periods.open_period(second.id)
        promoted = self._enrollments.get_student(student.id)
        print("\n=== Period Transition ===")
        print(f"Closed {first.name}: {opening.previous_closing.to_dict()}")
        print(f"Opened {second.name}; {student.code} is now in cycle {promoted.current_cycle}")

        ranking = [entry.to_dict() for entry in self._ranking.rank_period(first.id)]
        print("\n=== Merit Ranking ===")
        for entry in ranking:
            print(f"{entry['position']}. {entry['student_code']} {entry['period_average']} {entry['band']}")
        print("\nDemo completed")
        return {'report': report.to_dict(), 'ranking': ranking}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Kardex evaluation and grade computation engine")
    parser.add_argument("--config", type=str, help="Configuration file path (JSON)")
    parser.add_argument("--demo", action="store_true", help="Run demo mode")
    parser.add_argument("--log-level", type=str, help="Override the configured log level")
    args = parser.parse_args(argv)

    overrides = {'log_level': args.log_level} if args.log_level else None
    try:
        settings = load_settings(args.config, overrides)
    except KardexException as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    platform = KardexPlatform(settings)

    if args.demo:
        try:
            platform.run_demo()
        except KardexException as e:
            logger.error("Demo failed: %s", e.message)
            print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
            return 1
        return 0

    print(json.dumps({
        'settings': settings.model_dump(mode='json'),
        'default_scheme': [
            {'label': slot.label, 'weight_percent': str(slot.weight_percent), 'aliases': list(slot.aliases)}
            for slot in DEFAULT_EVALUATION_SCHEME
        ]
    }, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
