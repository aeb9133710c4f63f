"""Shared test doubles: manual clock, date-job scheduler, dispatcher and builders."""

import datetime as dt
import itertools
from typing import Dict, Iterable, List, Set

from apscheduler.jobstores.base import ConflictingIdError, JobLookupError

from bookwatcher.models import LabelKind, ObservedItem, ScanResult, SearchProfile
from bookwatcher.notifications import DeliveryResult

T0 = dt.datetime(2025, 3, 1, 9, 0, tzinfo=dt.timezone.utc)


class ManualClock:

    def __init__(self, start: dt.datetime = T0):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now


class FakeScheduler:
    """Stores date jobs and fires them as the manual clock is advanced."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.jobs: Dict[str, tuple] = {}

    def add_job(self, func, trigger, run_date=None, args=None, id=None,
                replace_existing=False, **kwargs):
        assert trigger == "date"
        if id in self.jobs and not replace_existing:
            raise ConflictingIdError(id)
        self.jobs[id] = (run_date, func, list(args or []))

    def remove_job(self, job_id, jobstore=None):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def advance(self, **delta) -> None:
        self.advance_to(self.clock.now + dt.timedelta(**delta))

    def advance_to(self, when: dt.datetime) -> None:
        while True:
            due = sorted(
                (run_date, job_id) for job_id, (run_date, _, _) in self.jobs.items()
                if run_date <= when
            )
            if not due:
                break
            run_date, job_id = due[0]
            _, func, args = self.jobs.pop(job_id)
            self.clock.now = run_date
            func(*args)
        self.clock.now = when


class FakeDispatcher:

    def __init__(self, unreachable: Iterable[str] = (), failing: Iterable[str] = ()):
        self.sent: List[tuple] = []
        self.unreachable: Set[str] = set(unreachable)
        self.failing: Set[str] = set(failing)

    def send(self, chat_id: str, message: str) -> None:
        self.sent.append((chat_id, message))

    def broadcast(self, recipients, message):
        outcomes = {}
        for chat_id in recipients:
            if chat_id in self.unreachable:
                outcomes[chat_id] = DeliveryResult.UNREACHABLE
            elif chat_id in self.failing:
                outcomes[chat_id] = DeliveryResult.FAILED
            else:
                self.sent.append((chat_id, message))
                outcomes[chat_id] = DeliveryResult.DELIVERED
        return outcomes

    def messages_to(self, chat_id: str) -> List[str]:
        return [message for recipient, message in self.sent if recipient == chat_id]

    def count_containing(self, text: str) -> int:
        return sum(1 for _, message in self.sent if text in message)


class InMemorySubscribers:

    def __init__(self, chat_ids: Iterable[str]):
        self.active: List[str] = list(chat_ids)

    def get_active_subscribers(self) -> List[str]:
        return list(self.active)

    def is_subscriber(self, chat_id: str) -> bool:
        return chat_id in self.active

    def remove_subscriber(self, chat_id: str) -> bool:
        if chat_id not in self.active:
            return False
        self.active.remove(chat_id)
        return True


def make_profile(profile_id: str = "family", **overrides) -> SearchProfile:
    fields = dict(
        id=profile_id,
        name=f"Profile {profile_id}",
        url=f"https://example.com/{profile_id}",
    )
    fields.update(overrides)
    return SearchProfile(**fields)


def make_scan(profile: SearchProfile, available: int, booked: int,
              unclassified: int = 0) -> ScanResult:
    items = [
        ObservedItem(text="Забронировать", kind=LabelKind.AVAILABLE, position_index=booked + idx)
        for idx in range(available)
    ]
    return ScanResult(
        profile_id=profile.id,
        profile_name=profile.name,
        total_count=available + booked,
        booked_count=booked,
        available_items=items,
        unclassified_count=unclassified,
        scanned_at=T0,
    )


def failed_scan(profile: SearchProfile, message: str = "Timeout 90000ms exceeded") -> ScanResult:
    return ScanResult(profile_id=profile.id, profile_name=profile.name, error=message)


def sequential_ids(prefix: str = "alert"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"

