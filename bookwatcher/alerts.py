"""Alert escalation: one pending alert, timed reminders, first reply wins.

State machine over a single slot::

    IDLE --raise--> ACTIVE --wait window elapsed--> WAITING_ACK
    ACTIVE/WAITING_ACK --raise--> ACTIVE (previous alert cancelled, not merged)
    ACTIVE/WAITING_ACK --acknowledge--> IDLE
    WAITING_ACK --reminder cap reached--> IDLE

Timers are scheduler jobs tagged with the alert id. Every firing re-checks
under the engine lock that its alert is still the live one, so a job that
slips past cancellation does nothing.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
import uuid
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from apscheduler.jobstores.base import JobLookupError

from .errors import StateStoreError
from .models import PendingAlert, ScanResult
from .notifications import DeliveryResult, Dispatcher
from .templates import format_ack_confirmation, format_available_alert, format_reminder

logger = logging.getLogger(__name__)

WAIT_FOR_RESPONSE = dt.timedelta(minutes=5)
REMINDER_INTERVAL = dt.timedelta(minutes=1)
MAX_REMINDERS = 5


class AlertState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    WAITING_ACK = "waiting_ack"


class SubscriberStore(Protocol):
    def get_active_subscribers(self) -> List[str]:
        ...

    def is_subscriber(self, chat_id: str) -> bool:
        ...

    def remove_subscriber(self, chat_id: str) -> bool:
        ...


class JobScheduler(Protocol):
    """The subset of the APScheduler scheduler API the engine relies on."""

    def add_job(self, func: Callable, trigger: str, **kwargs):
        ...

    def remove_job(self, job_id: str, jobstore: Optional[str] = None) -> None:
        ...


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _new_alert_id() -> str:
    return f"alert-{uuid.uuid4().hex[:12]}"


class AlertEngine:
    """Owns the pending alert slot and its reminder timer."""

    def __init__(
        self,
        scheduler: JobScheduler,
        dispatcher: Dispatcher,
        subscribers: SubscriberStore,
        wait_for_response: dt.timedelta = WAIT_FOR_RESPONSE,
        reminder_interval: dt.timedelta = REMINDER_INTERVAL,
        max_reminders: int = MAX_REMINDERS,
        clock: Callable[[], dt.datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_alert_id,
    ):
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.subscribers = subscribers
        self.wait_for_response = wait_for_response
        self.reminder_interval = reminder_interval
        self.max_reminders = max_reminders
        self.clock = clock
        self.id_factory = id_factory
        self._lock = threading.Lock()
        self._pending: Optional[PendingAlert] = None
        self._link: Optional[str] = None
        self._state = AlertState.IDLE
        self._job_id: Optional[str] = None

    @property
    def state(self) -> AlertState:
        return self._state

    @property
    def pending(self) -> Optional[PendingAlert]:
        return self._pending

    def has_pending_alert(self) -> bool:
        pending = self._pending
        return pending is not None and not pending.acknowledged

    def raise_alert(
        self,
        profile_name: str,
        scan: ScanResult,
        link: Optional[str] = None,
    ) -> PendingAlert:
        """Replace any pending alert with a new one and broadcast it."""
        with self._lock:
            if self._pending is not None:
                logger.info(
                    "Superseding alert %s after %d reminder(s)",
                    self._pending.id,
                    self._pending.reminders_sent,
                )
                self._cancel_timer()

            alert = PendingAlert(
                id=self.id_factory(),
                profile_name=profile_name,
                scan_result=scan,
                sent_at=self.clock(),
            )
            self._pending = alert
            self._link = link
            self._state = AlertState.ACTIVE

            message = format_available_alert(profile_name, scan, link=link, now=alert.sent_at)
            outcomes = self._broadcast(message)
            logger.info(
                "Alert %s sent to %d/%d subscriber(s)",
                alert.id,
                sum(1 for result in outcomes.values() if result is DeliveryResult.DELIVERED),
                len(outcomes),
            )
            self._schedule(self._on_wait_elapsed, alert.id, alert.sent_at + self.wait_for_response)
            return alert

    def acknowledge(self, chat_id: str) -> bool:
        """Silence the pending alert if ``chat_id`` is an active subscriber."""
        with self._lock:
            alert = self._pending
            if alert is None or alert.acknowledged:
                return False
            if not self.subscribers.is_subscriber(chat_id):
                logger.debug("Ignoring message from non-subscriber %s", chat_id)
                return False
            alert.acknowledged = True
            self._cancel_timer()
            self._clear()
            logger.info(
                "Alert %s acknowledged by %s after %d reminder(s)",
                alert.id,
                chat_id,
                alert.reminders_sent,
            )
            self._deliver([chat_id], format_ack_confirmation())
        return True

    def stop(self) -> None:
        """Cancel the reminder timer and drop the pending alert."""
        with self._lock:
            if self._pending is not None:
                logger.info("Dropping pending alert %s on shutdown", self._pending.id)
            self._cancel_timer()
            self._clear()

    def _on_wait_elapsed(self, alert_id: str) -> None:
        with self._lock:
            if not self._is_live(alert_id):
                logger.debug("Ignoring stale wait timer for %s", alert_id)
                return
            self._job_id = None
            self._state = AlertState.WAITING_ACK
            logger.info("No response to alert %s, starting reminders", alert_id)
            self._reminder_step(self._pending)

    def _on_reminder_tick(self, alert_id: str) -> None:
        with self._lock:
            if not self._is_live(alert_id):
                logger.debug("Ignoring stale reminder timer for %s", alert_id)
                return
            self._job_id = None
            self._reminder_step(self._pending)

    def _reminder_step(self, alert: PendingAlert) -> None:
        if alert.reminders_sent >= self.max_reminders:
            logger.warning(
                "Alert %s unacknowledged after %d reminder(s), stopping",
                alert.id,
                alert.reminders_sent,
            )
            self._clear()
            return

        alert.reminders_sent += 1
        message = format_reminder(
            alert.profile_name,
            alert.scan_result,
            alert.reminders_sent,
            self.max_reminders,
            link=self._link,
        )
        self._broadcast(message)
        logger.info(
            "Reminder %d/%d sent for alert %s",
            alert.reminders_sent,
            self.max_reminders,
            alert.id,
        )
        next_run = (
            alert.sent_at
            + self.wait_for_response
            + self.reminder_interval * alert.reminders_sent
        )
        self._schedule(self._on_reminder_tick, alert.id, next_run)

    def _is_live(self, alert_id: str) -> bool:
        alert = self._pending
        return alert is not None and alert.id == alert_id and not alert.acknowledged

    def _schedule(self, callback: Callable[[str], None], alert_id: str, run_date: dt.datetime) -> None:
        job_id = f"{alert_id}-timer"
        self.scheduler.add_job(
            callback,
            "date",
            run_date=run_date,
            args=[alert_id],
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._job_id = job_id

    def _cancel_timer(self) -> None:
        if self._job_id is None:
            return
        try:
            self.scheduler.remove_job(self._job_id)
        except JobLookupError:
            # Already fired; the liveness check neutralises it.
            pass
        self._job_id = None

    def _clear(self) -> None:
        self._pending = None
        self._link = None
        self._state = AlertState.IDLE

    def _broadcast(self, message: str) -> Dict[str, DeliveryResult]:
        try:
            recipients = self.subscribers.get_active_subscribers()
        except StateStoreError as exc:
            logger.error("Cannot load subscribers for broadcast: %s", exc)
            return {}
        if not recipients:
            logger.warning("No active subscribers to notify")
            return {}
        return self._deliver(recipients, message)

    def _deliver(self, recipients: Iterable[str], message: str) -> Dict[str, DeliveryResult]:
        outcomes = self.dispatcher.broadcast(recipients, message)
        for chat_id, result in outcomes.items():
            if result is not DeliveryResult.UNREACHABLE:
                continue
            try:
                self.subscribers.remove_subscriber(chat_id)
                logger.info("Unsubscribed unreachable recipient %s", chat_id)
            except StateStoreError as exc:
                logger.error("Failed to unsubscribe %s: %s", chat_id, exc)
        return outcomes
