"""Core execution workflow for BookWatcher."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from .alerts import AlertEngine
from .db import Database
from .detector import ChangeDetector
from .errors import StateStoreError
from .models import MonitorStats, ProfileRunResult, RunSummary, ScanResult, SearchProfile
from .notifications import OperatorChannel
from .profiles import get_enabled_profiles
from .templates import format_error_message

logger = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    def scan(self, profile: SearchProfile) -> ScanResult:
        ...


@dataclass
class MonitorRunner:
    """Coordinates scan, change detection, alerting and history for all profiles."""

    database: Database
    reader: SnapshotSource
    engine: AlertEngine
    operators: OperatorChannel
    profiles: Optional[List[SearchProfile]] = None
    stats: MonitorStats = field(default_factory=MonitorStats)

    def __post_init__(self) -> None:
        self.detector = ChangeDetector(database=self.database)
        self._run_lock = threading.Lock()

    def init(self) -> None:
        """Initialize required persistence structures."""
        logger.info("Initializing database at %s", self.database.path)
        self.database.initialize()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(self, trigger: str = "scheduled") -> Optional[RunSummary]:
        """Execute one monitoring cycle, or return None if one is already running."""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Previous monitoring cycle still running, skipping %s run", trigger)
            return None
        try:
            return self._run(trigger)
        finally:
            self._run_lock.release()

    def _run(self, trigger: str) -> RunSummary:
        executed_at = dt.datetime.now(dt.timezone.utc).isoformat()
        summary = RunSummary(executed_at=executed_at, trigger=trigger)
        profiles = get_enabled_profiles(self.profiles)
        if not profiles:
            logger.warning("No enabled profiles found")
            return summary

        logger.info("Starting %s monitoring cycle for %d profile(s)", trigger, len(profiles))
        for profile in profiles:
            summary.results.append(self._process_profile(profile))
        logger.info(
            "Cycle finished: %d profile(s), %d alert(s) raised",
            len(summary.results),
            summary.alerts_raised,
        )
        return summary

    def _process_profile(self, profile: SearchProfile) -> ProfileRunResult:
        scan = self.reader.scan(profile)
        result = ProfileRunResult(profile=profile, scan=scan)
        self._record_run(scan)

        if scan.failed:
            result.error = scan.error
            self._notify_operators(f'Ошибка парсинга профиля "{profile.name}": {scan.error}')
            return result

        self.stats.total_checks += 1
        self.stats.last_check_time = scan.scanned_at
        self.stats.total_apartments = scan.total_count
        self.stats.booked_count = scan.booked_count

        try:
            outcome = self.detector.process(profile, scan)
        except StateStoreError as exc:
            logger.error("Change detection failed for %s: %s", profile.id, exc)
            result.error = str(exc)
            self._notify_operators(f'Ошибка базы данных для профиля "{profile.name}": {exc}')
            return result

        result.changes = outcome.changes
        if outcome.failed_writes:
            logger.warning(
                "%d state write(s) failed for %s: %s",
                len(outcome.failed_writes),
                profile.id,
                ", ".join(outcome.failed_writes),
            )
        if outcome.should_alert:
            logger.info("Available apartments found for %s, raising alert", profile.id)
            self.engine.raise_alert(profile.name, scan, link=profile.url)
            result.alert_raised = True
        elif scan.available_count:
            logger.info(
                "%d apartment(s) still available for %s, alert already raised earlier",
                scan.available_count,
                profile.id,
            )
        else:
            logger.info("All apartments still booked for %s", profile.id)
        return result

    def _record_run(self, scan: ScanResult) -> None:
        try:
            self.database.add_run(scan)
        except StateStoreError as exc:
            logger.error("Failed to record run history for %s: %s", scan.profile_id, exc)

    def _notify_operators(self, error: str) -> None:
        if not self.operators.notify(format_error_message(error)):
            logger.warning("Operator notification was not delivered")
