"""Change detection between a fresh scan and persisted state.

Booking controls carry no stable identity, so the alerting contract is
the aggregate transition from "nothing available" to "something
available" for a profile. Per-item ``available-<n>`` records are kept as
diagnostics and for price tracking; index shifts between scans never
produce alerts on their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .db import Database, utcnow
from .errors import StateStoreError
from .models import (
    ApartmentChange,
    ApartmentRecord,
    ApartmentStatus,
    ChangeType,
    NotificationPolicy,
    ProfileSnapshot,
    ScanResult,
    ScrapedApartment,
    SearchProfile,
)

logger = logging.getLogger(__name__)

SYNTHETIC_ID_PREFIX = "available-"


@dataclass
class DetectionResult:
    """Changes to emit plus the state that should be written back."""

    changes: List[ApartmentChange]
    apartments: List[ScrapedApartment]
    snapshot: ProfileSnapshot


@dataclass
class DetectionOutcome:
    """What the detector did for one scan."""

    profile_id: str
    changes: List[ApartmentChange] = field(default_factory=list)
    failed_writes: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def should_alert(self) -> bool:
        return self.error is None and bool(self.changes)


def synthetic_id(ordinal: int) -> str:
    return f"{SYNTHETIC_ID_PREFIX}{ordinal}"


def scraped_apartments(scan: ScanResult) -> List[ScrapedApartment]:
    """Assign position-based ids to the available controls of a scan."""
    return [
        ScrapedApartment(external_id=synthetic_id(ordinal), status=ApartmentStatus.AVAILABLE)
        for ordinal, _ in enumerate(scan.available_items)
    ]


def detect_changes(
    profile_id: str,
    scan: ScanResult,
    prior_state: Dict[str, ApartmentRecord],
    prior_snapshot: Optional[ProfileSnapshot],
    policy: NotificationPolicy,
) -> DetectionResult:
    """Compute semantic changes and the write-back state for one scan.

    At most one availability change is emitted per scan: it fires only when
    the previous available count was zero (or unknown) and the current one
    is positive.
    """
    if scan.failed:
        raise ValueError("cannot detect changes for a failed scan")

    changes: List[ApartmentChange] = []
    current = scraped_apartments(scan)
    previous_available = prior_snapshot.available_count if prior_snapshot else 0

    if previous_available == 0 and scan.available_count > 0:
        trigger = current[0]
        existing = prior_state.get(trigger.external_id)
        if prior_snapshot is None and policy.notify_on_new:
            change_type: Optional[ChangeType] = ChangeType.NEW
        elif policy.notify_on_available:
            change_type = ChangeType.AVAILABLE
        else:
            change_type = None

        if change_type is not None:
            changes.append(
                ApartmentChange(
                    change_type=change_type,
                    apartment=trigger,
                    available_count=scan.available_count,
                    previous_status=existing.status if existing else None,
                )
            )
            logger.info(
                "%s: availability went from 0 to %d (%s)",
                profile_id,
                scan.available_count,
                change_type.value,
            )
        else:
            logger.info(
                "%s: availability went from 0 to %d but notifications are disabled",
                profile_id,
                scan.available_count,
            )
    elif previous_available > 0 and scan.available_count == 0:
        logger.info("%s: all %d available apartment(s) are gone", profile_id, previous_available)

    if policy.notify_on_price_change:
        for apartment in current:
            existing = prior_state.get(apartment.external_id)
            if (
                existing is not None
                and existing.price is not None
                and apartment.price is not None
                and existing.price != apartment.price
            ):
                changes.append(
                    ApartmentChange(
                        change_type=ChangeType.PRICE_CHANGE,
                        apartment=apartment,
                        available_count=scan.available_count,
                        previous_price=existing.price,
                    )
                )
                logger.info(
                    "%s: %s price changed %s -> %s",
                    profile_id,
                    apartment.external_id,
                    existing.price,
                    apartment.price,
                )

    # Positions no longer available are written back as booked.
    current_ids = {apartment.external_id for apartment in current}
    write_back = list(current)
    for external_id, record in sorted(prior_state.items()):
        if external_id in current_ids or not external_id.startswith(SYNTHETIC_ID_PREFIX):
            continue
        if record.status is ApartmentStatus.AVAILABLE:
            logger.debug("%s: %s is no longer available", profile_id, external_id)
            write_back.append(
                ScrapedApartment(
                    external_id=external_id,
                    status=ApartmentStatus.BOOKED,
                    price=record.price,
                    price_per_meter=record.price_per_meter,
                    area=record.area,
                    floor=record.floor,
                    rooms=record.rooms,
                    address=record.address,
                    building=record.building,
                    link=record.link,
                )
            )

    snapshot = ProfileSnapshot(
        profile_id=profile_id,
        total_count=scan.total_count,
        booked_count=scan.booked_count,
        available_count=scan.available_count,
        unclassified_count=scan.unclassified_count,
        updated_at=utcnow(),
    )
    return DetectionResult(changes=changes, apartments=write_back, snapshot=snapshot)


@dataclass
class ChangeDetector:
    """Runs detection against the state store and writes results back."""

    database: Database

    def process(self, profile: SearchProfile, scan: ScanResult) -> DetectionOutcome:
        """Detect changes for ``scan``; StateStoreError on read failures propagates."""
        if scan.failed:
            logger.warning("Skipping detection for %s: %s", profile.id, scan.error)
            return DetectionOutcome(profile_id=profile.id, error=scan.error)

        prior_state = self.database.fetch_apartments(profile.id)
        prior_snapshot = self.database.get_profile_snapshot(profile.id)
        result = detect_changes(profile.id, scan, prior_state, prior_snapshot, profile.policy)

        outcome = DetectionOutcome(profile_id=profile.id, changes=result.changes)
        for apartment in result.apartments:
            try:
                self.database.upsert_apartment(profile.id, apartment)
            except StateStoreError as exc:
                logger.error(
                    "Failed to persist %s for %s: %s", apartment.external_id, profile.id, exc
                )
                outcome.failed_writes.append(apartment.external_id)
        try:
            self.database.upsert_profile_snapshot(result.snapshot)
        except StateStoreError as exc:
            logger.error("Failed to persist snapshot for %s: %s", profile.id, exc)
            outcome.failed_writes.append("snapshot")
        return outcome
