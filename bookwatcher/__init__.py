"""BookWatcher package initialization."""

from .alerts import AlertEngine, AlertState
from .db import Database
from .detector import ChangeDetector, detect_changes
from .models import (
    ApartmentChange,
    ApartmentRecord,
    ApartmentStatus,
    ChangeType,
    ObservedItem,
    PendingAlert,
    RunSummary,
    ScanResult,
    SearchProfile,
)
from .runner import MonitorRunner
from .scraper import SnapshotReader, classify_label, parse_booking_controls

__all__ = [
    "AlertEngine",
    "AlertState",
    "ApartmentChange",
    "ApartmentRecord",
    "ApartmentStatus",
    "ChangeDetector",
    "ChangeType",
    "Database",
    "MonitorRunner",
    "ObservedItem",
    "PendingAlert",
    "RunSummary",
    "ScanResult",
    "SearchProfile",
    "SnapshotReader",
    "classify_label",
    "detect_changes",
    "parse_booking_controls",
]
