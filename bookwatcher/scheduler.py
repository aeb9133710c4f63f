"""Periodic wiring: jittered scans, heartbeats and housekeeping on APScheduler."""

from __future__ import annotations

import datetime as dt
import logging
import random
import threading
from pathlib import Path
from typing import Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .alerts import AlertEngine
from .cleanup import cleanup_directory
from .config import Settings
from .notifications import OperatorChannel
from .runner import MonitorRunner
from .templates import MOSCOW_TZ, format_heartbeat_message

logger = logging.getLogger(__name__)

SCAN_JOB_ID = "scan"
HEARTBEAT_JOB_ID = "heartbeat"
CLEANUP_JOB_ID = "cleanup"


class MonitorService:
    """Owns the scheduler lifecycle for the long-running process."""

    def __init__(
        self,
        settings: Settings,
        scheduler: BaseScheduler,
        runner: MonitorRunner,
        engine: AlertEngine,
        operators: OperatorChannel,
        artifacts_dir: Optional[Path] = None,
    ):
        self.settings = settings
        self.scheduler = scheduler
        self.runner = runner
        self.engine = engine
        self.operators = operators
        self.artifacts_dir = artifacts_dir
        self._stopping = threading.Event()

    def start(self, run_immediately: bool = True) -> None:
        interval = self.settings.check_interval_minutes
        logger.info(
            "Scheduler: every %d min + %d-%d s jitter",
            interval,
            self.settings.random_delay_min_seconds,
            self.settings.random_delay_max_seconds,
        )
        self.scheduler.add_job(
            self.run_check_with_jitter,
            trigger=IntervalTrigger(minutes=interval),
            id=SCAN_JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        if run_immediately:
            self.scheduler.add_job(
                self.runner.run,
                "date",
                args=["startup"],
                id="initial-scan",
            )
        self.scheduler.add_job(
            self.send_heartbeat,
            trigger=CronTrigger(hour="0,6,12,18", minute=0, timezone=MOSCOW_TZ),
            id=HEARTBEAT_JOB_ID,
        )
        if self.artifacts_dir is not None:
            self.scheduler.add_job(
                cleanup_directory,
                trigger=IntervalTrigger(hours=1),
                args=[self.artifacts_dir],
                id=CLEANUP_JOB_ID,
            )
        self.scheduler.start()
        logger.info("Scheduler started; heartbeat at 00:00, 06:00, 12:00, 18:00 MSK")

    def run_check_with_jitter(self) -> None:
        """Wait a random delay before scanning so requests do not look periodic."""
        delay = random.uniform(
            self.settings.random_delay_min_seconds,
            self.settings.random_delay_max_seconds,
        )
        logger.debug("Jitter: sleeping %.1f s before check", delay)
        if self._stopping.wait(delay):
            return
        self.runner.run(trigger="scheduled")

    def send_heartbeat(self) -> None:
        logger.info("Sending heartbeat message")
        self.operators.notify(
            format_heartbeat_message(self.runner.stats, now=dt.datetime.now(dt.timezone.utc))
        )

    def stop(self) -> None:
        self._stopping.set()
        self.engine.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
