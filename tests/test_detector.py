from decimal import Decimal

import pytest

from bookwatcher.db import Database
from bookwatcher.detector import ChangeDetector, detect_changes, scraped_apartments
from bookwatcher.errors import StateStoreError
from bookwatcher.models import (
    ApartmentRecord,
    ApartmentStatus,
    ChangeType,
    NotificationPolicy,
    ProfileSnapshot,
)

from fakes import failed_scan, make_profile, make_scan


def snapshot(available: int, booked: int, profile_id: str = "family") -> ProfileSnapshot:
    return ProfileSnapshot(
        profile_id=profile_id,
        total_count=available + booked,
        booked_count=booked,
        available_count=available,
        unclassified_count=0,
        updated_at="2025-01-01T00:00:00+00:00",
    )


def record(external_id: str, status: ApartmentStatus, price=None) -> ApartmentRecord:
    return ApartmentRecord(
        external_id=external_id,
        profile_id="family",
        status=status,
        price=price,
        price_per_meter=None,
        area=None,
        floor=None,
        rooms=None,
        address=None,
        building=None,
        link=None,
        created_at="2025-01-01T00:00:00+00:00",
        updated_at="2025-01-01T00:00:00+00:00",
    )


@pytest.fixture
def db(tmp_path):
    database = Database(path=tmp_path / "detector.db")
    database.initialize()
    return database


def test_scraped_apartments_use_ordinal_ids():
    profile = make_profile()
    apartments = scraped_apartments(make_scan(profile, 3, 9))
    assert [apartment.external_id for apartment in apartments] == [
        "available-0",
        "available-1",
        "available-2",
    ]
    assert all(apartment.status is ApartmentStatus.AVAILABLE for apartment in apartments)


def test_zero_to_positive_transition_emits_one_change():
    profile = make_profile()
    result = detect_changes(
        profile.id, make_scan(profile, 2, 10), {}, snapshot(0, 12), NotificationPolicy()
    )

    assert len(result.changes) == 1
    change = result.changes[0]
    assert change.change_type is ChangeType.AVAILABLE
    assert change.available_count == 2
    assert result.snapshot.available_count == 2
    assert result.snapshot.booked_count == 10


def test_first_ever_scan_with_availability_is_new():
    profile = make_profile()
    result = detect_changes(profile.id, make_scan(profile, 1, 5), {}, None, NotificationPolicy())

    assert [change.change_type for change in result.changes] == [ChangeType.NEW]


def test_first_ever_scan_falls_back_to_available_when_new_disabled():
    profile = make_profile()
    policy = NotificationPolicy(notify_on_new=False)
    result = detect_changes(profile.id, make_scan(profile, 1, 5), {}, None, policy)

    assert [change.change_type for change in result.changes] == [ChangeType.AVAILABLE]


def test_no_change_when_nothing_available():
    profile = make_profile()
    result = detect_changes(
        profile.id, make_scan(profile, 0, 12), {}, snapshot(0, 12), NotificationPolicy()
    )

    assert result.changes == []
    assert result.apartments == []
    assert result.snapshot.available_count == 0


def test_no_change_when_availability_persists():
    profile = make_profile()
    prior = {"available-0": record("available-0", ApartmentStatus.AVAILABLE)}
    result = detect_changes(
        profile.id, make_scan(profile, 3, 9), prior, snapshot(1, 11), NotificationPolicy()
    )

    assert result.changes == []


def test_policy_disables_availability_changes():
    profile = make_profile()
    policy = NotificationPolicy(notify_on_new=False, notify_on_available=False)
    result = detect_changes(profile.id, make_scan(profile, 2, 10), {}, snapshot(0, 12), policy)

    assert result.changes == []
    assert result.snapshot.available_count == 2


def test_positions_no_longer_available_are_written_back_as_booked():
    profile = make_profile()
    prior = {
        "available-0": record("available-0", ApartmentStatus.AVAILABLE),
        "available-1": record("available-1", ApartmentStatus.AVAILABLE),
        "available-2": record("available-2", ApartmentStatus.BOOKED),
        "legacy-7": record("legacy-7", ApartmentStatus.AVAILABLE),
    }
    result = detect_changes(
        profile.id, make_scan(profile, 1, 11), prior, snapshot(2, 10), NotificationPolicy()
    )

    statuses = {apartment.external_id: apartment.status for apartment in result.apartments}
    assert statuses == {
        "available-0": ApartmentStatus.AVAILABLE,
        "available-1": ApartmentStatus.BOOKED,
    }


def test_price_change_requires_both_prices():
    profile = make_profile()
    prior = {
        "available-0": record(
            "available-0", ApartmentStatus.AVAILABLE, price=Decimal("10000000")
        )
    }
    policy = NotificationPolicy(notify_on_price_change=True)
    result = detect_changes(profile.id, make_scan(profile, 1, 11), prior, snapshot(1, 11), policy)

    assert result.changes == []


def test_failed_scan_is_rejected():
    profile = make_profile()
    with pytest.raises(ValueError):
        detect_changes(profile.id, failed_scan(profile), {}, None, NotificationPolicy())


def test_detector_is_idempotent_for_repeated_scans(db):
    profile = make_profile()
    detector = ChangeDetector(database=db)

    first = detector.process(profile, make_scan(profile, 0, 12))
    second = detector.process(profile, make_scan(profile, 2, 10))
    third = detector.process(profile, make_scan(profile, 2, 10))

    assert first.changes == [] and not first.should_alert
    assert len(second.changes) == 1 and second.should_alert
    assert third.changes == [] and not third.should_alert
    assert db.get_profile_snapshot(profile.id).available_count == 2
    assert db.count_available(profile.id) == 2


def test_detector_alerts_again_after_availability_drops_to_zero(db):
    profile = make_profile()
    detector = ChangeDetector(database=db)

    detector.process(profile, make_scan(profile, 0, 12))
    assert detector.process(profile, make_scan(profile, 1, 11)).should_alert
    assert not detector.process(profile, make_scan(profile, 0, 12)).should_alert
    assert db.count_available(profile.id) == 0
    assert db.fetch_apartments(profile.id)["available-0"].status is ApartmentStatus.BOOKED
    assert detector.process(profile, make_scan(profile, 1, 11)).should_alert


def test_failed_scan_leaves_state_untouched(db):
    profile = make_profile()
    detector = ChangeDetector(database=db)
    detector.process(profile, make_scan(profile, 1, 11))

    outcome = detector.process(profile, failed_scan(profile))

    assert outcome.error == "Timeout 90000ms exceeded"
    assert not outcome.should_alert
    assert db.get_profile_snapshot(profile.id).available_count == 1
    assert db.count_available(profile.id) == 1


def test_failed_scan_does_not_reset_baseline(db):
    profile = make_profile()
    detector = ChangeDetector(database=db)
    detector.process(profile, make_scan(profile, 1, 11))
    detector.process(profile, failed_scan(profile))

    # Still available after the failure: no fresh transition.
    assert not detector.process(profile, make_scan(profile, 1, 11)).should_alert


def test_item_write_failures_are_isolated(db, monkeypatch):
    profile = make_profile()
    detector = ChangeDetector(database=db)
    original_upsert = db.upsert_apartment

    def flaky_upsert(profile_id, apartment):
        if apartment.external_id == "available-1":
            raise StateStoreError("disk I/O error")
        original_upsert(profile_id, apartment)

    monkeypatch.setattr(db, "upsert_apartment", flaky_upsert)

    outcome = detector.process(profile, make_scan(profile, 3, 9))

    assert outcome.failed_writes == ["available-1"]
    assert outcome.should_alert
    assert set(db.fetch_apartments(profile.id)) == {"available-0", "available-2"}
    assert db.get_profile_snapshot(profile.id).available_count == 3


def test_snapshot_write_failure_is_reported(db, monkeypatch):
    profile = make_profile()
    detector = ChangeDetector(database=db)

    def broken_snapshot(snapshot):
        raise StateStoreError("database is locked")

    monkeypatch.setattr(db, "upsert_profile_snapshot", broken_snapshot)

    outcome = detector.process(profile, make_scan(profile, 1, 11))

    assert outcome.failed_writes == ["snapshot"]
    assert outcome.should_alert


def test_read_failure_propagates(db, monkeypatch):
    profile = make_profile()
    detector = ChangeDetector(database=db)

    def broken_fetch(profile_id):
        raise StateStoreError("no such table: apartments")

    monkeypatch.setattr(db, "fetch_apartments", broken_fetch)

    with pytest.raises(StateStoreError):
        detector.process(profile, make_scan(profile, 1, 11))
