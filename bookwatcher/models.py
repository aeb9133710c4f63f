"""Core data models for BookWatcher."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class ApartmentStatus(str, Enum):
    """Lifecycle status of a tracked apartment."""

    AVAILABLE = "available"
    BOOKED = "booked"
    SOLD = "sold"
    UNKNOWN = "unknown"


class LabelKind(str, Enum):
    """Classification of a booking control label."""

    AVAILABLE = "available"
    BOOKED = "booked"
    UNCLASSIFIED = "unclassified"


class ChangeType(str, Enum):
    NEW = "new"
    AVAILABLE = "available"
    PRICE_CHANGE = "price_change"


@dataclass(frozen=True)
class SearchProfile:
    """A configured listing URL together with its notification policy."""

    id: str
    name: str
    url: str
    enabled: bool = True
    notify_on_new: bool = True
    notify_on_available: bool = True
    notify_on_price_change: bool = False

    @property
    def policy(self) -> "NotificationPolicy":
        return NotificationPolicy(
            notify_on_new=self.notify_on_new,
            notify_on_available=self.notify_on_available,
            notify_on_price_change=self.notify_on_price_change,
        )


@dataclass(frozen=True)
class NotificationPolicy:
    notify_on_new: bool = True
    notify_on_available: bool = True
    notify_on_price_change: bool = False


@dataclass(frozen=True)
class ObservedItem:
    """One booking control read during a single scan."""

    text: str
    kind: LabelKind
    position_index: int

    @property
    def is_booked(self) -> bool:
        return self.kind is LabelKind.BOOKED


@dataclass
class ScanResult:
    """Outcome of reading one profile page.

    A result with ``error`` set is a scan-level failure marker and its
    counts must not be interpreted as "nothing available".
    """

    profile_id: str
    profile_name: str
    total_count: int = 0
    booked_count: int = 0
    available_items: List[ObservedItem] = field(default_factory=list)
    unclassified_count: int = 0
    scanned_at: dt.datetime = field(
        default_factory=lambda: dt.datetime.now(dt.timezone.utc)
    )
    duration_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def available_count(self) -> int:
        return len(self.available_items)

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class ScrapedApartment:
    """Per-scan snapshot of a single apartment."""

    external_id: str
    status: ApartmentStatus
    price: Optional[Decimal] = None
    price_per_meter: Optional[Decimal] = None
    area: Optional[Decimal] = None
    floor: Optional[int] = None
    rooms: Optional[int] = None
    address: Optional[str] = None
    building: Optional[str] = None
    link: Optional[str] = None


@dataclass
class ApartmentRecord:
    """Persisted representation of a tracked apartment."""

    external_id: str
    profile_id: str
    status: ApartmentStatus
    price: Optional[Decimal]
    price_per_meter: Optional[Decimal]
    area: Optional[Decimal]
    floor: Optional[int]
    rooms: Optional[int]
    address: Optional[str]
    building: Optional[str]
    link: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class ProfileSnapshot:
    """Last successfully observed aggregate counts for a profile."""

    profile_id: str
    total_count: int
    booked_count: int
    available_count: int
    unclassified_count: int
    updated_at: str


@dataclass(frozen=True)
class ApartmentChange:
    """A semantic change emitted by the detector; never persisted."""

    change_type: ChangeType
    apartment: ScrapedApartment
    available_count: int = 0
    previous_price: Optional[Decimal] = None
    previous_status: Optional[ApartmentStatus] = None


@dataclass
class PendingAlert:
    """The single in-flight, not yet acknowledged notification cycle."""

    id: str
    profile_name: str
    scan_result: ScanResult
    sent_at: dt.datetime
    reminders_sent: int = 0
    acknowledged: bool = False


@dataclass
class Subscriber:
    chat_id: str
    username: Optional[str]
    first_name: Optional[str]
    subscribed_at: str
    is_active: bool


@dataclass
class RunRecord:
    """A row of scan history."""

    profile_id: str
    profile_name: str
    total_count: int
    booked_count: int
    available_count: int
    unclassified_count: int
    duration_ms: Optional[int]
    error: Optional[str]
    executed_at: str


@dataclass
class MonitorStats:
    """Counters reported by the heartbeat message."""

    total_checks: int = 0
    last_check_time: Optional[dt.datetime] = None
    total_apartments: int = 0
    booked_count: int = 0


@dataclass
class ProfileRunResult:
    """What happened to one profile during a monitoring cycle."""

    profile: SearchProfile
    scan: ScanResult
    changes: List[ApartmentChange] = field(default_factory=list)
    alert_raised: bool = False
    error: Optional[str] = None


@dataclass
class RunSummary:
    """Aggregated result returned by a monitoring cycle."""

    executed_at: str
    trigger: str
    results: List[ProfileRunResult] = field(default_factory=list)

    @property
    def alerts_raised(self) -> int:
        return sum(1 for result in self.results if result.alert_raised)
