import concurrent.futures

from bookwatcher.errors import TransientScanError
from bookwatcher.models import LabelKind
from bookwatcher.scraper import (
    BookingVocabulary,
    SnapshotReader,
    classify_label,
    normalize_label,
    parse_booking_controls,
    summarize_scan,
)

from fakes import make_profile

LISTING_HTML = """
<html>
  <head>
    <style>.btn { color: red; }</style>
    <script>window.label = "Забронировать";</script>
  </head>
  <body>
    <div class="filters"><button>Показать 12 квартир</button></div>
    <div class="booking-list">
      <div class="card">
        <div class="card__footer">
          <button class="btn btn-primary">  Забронировать </button>
        </div>
      </div>
      <div class="card"><button class="btn" disabled>Забронировано</button></div>
      <div class="card"><span class="status">Забронировано</span></div>
      <div class="card"><a class="book-link" href="#"><span>Book now</span></a></div>
      <div class="card"><div role="button">Продано</div></div>
      <div class="card"><button class="btn">Подробнее</button></div>
      <div class="card"><button class="btn"></button></div>
    </div>
  </body>
</html>
"""


class FakeSession:

    def __init__(self, html=None, exc=None):
        self.html = html
        self.exc = exc
        self.timeouts = []

    def run(self, action, timeout):
        self.timeouts.append(timeout)
        if self.exc is not None:
            raise self.exc
        return self.html


def test_normalize_label_collapses_whitespace():
    assert normalize_label("  Book\n  NOW ") == "book now"


def test_classify_label_vocabulary():
    assert classify_label("Забронировать") is LabelKind.AVAILABLE
    assert classify_label("BOOK NOW") is LabelKind.AVAILABLE
    assert classify_label("Забронировано") is LabelKind.BOOKED
    assert classify_label("Квартира забронирована до 12.03") is LabelKind.BOOKED
    assert classify_label("Бронь") is LabelKind.BOOKED
    assert classify_label("Sold out") is LabelKind.BOOKED
    assert classify_label("Подробнее") is LabelKind.UNCLASSIFIED
    assert classify_label("Забронировать онлайн") is LabelKind.UNCLASSIFIED


def test_classify_label_prefers_booked_markers():
    vocabulary = BookingVocabulary(available_labels=frozenset({"unavailable"}))
    assert classify_label("Unavailable", vocabulary) is LabelKind.BOOKED


def test_parse_booking_controls_reads_innermost_controls_in_order():
    items = parse_booking_controls(LISTING_HTML)

    assert [(item.text, item.kind) for item in items] == [
        ("Показать 12 квартир", LabelKind.UNCLASSIFIED),
        ("Забронировать", LabelKind.AVAILABLE),
        ("Забронировано", LabelKind.BOOKED),
        ("Забронировано", LabelKind.BOOKED),
        ("Book now", LabelKind.AVAILABLE),
        ("Продано", LabelKind.BOOKED),
        ("Подробнее", LabelKind.UNCLASSIFIED),
    ]
    assert [item.position_index for item in items] == list(range(7))


def test_parse_booking_controls_keeps_button_with_icon():
    html = '<div><button class="btn"><i class="btn__icon"></i> Забронировать</button></div>'

    items = parse_booking_controls(html)

    assert [(item.text, item.kind) for item in items] == [("Забронировать", LabelKind.AVAILABLE)]
    assert summarize_scan(make_profile(), items).available_count == 1


def test_parse_booking_controls_counts_wrapped_label_once():
    html = '<button class="btn"><span class="btn__text">Забронировано</span></button>'

    items = parse_booking_controls(html)

    assert [item.text for item in items] == ["Забронировано"]
    assert summarize_scan(make_profile(), items).booked_count == 1


def test_parse_booking_controls_handles_page_without_controls():
    assert parse_booking_controls("<html><body><p>Нет квартир</p></body></html>") == []


def test_summarize_scan_excludes_unclassified(caplog):
    profile = make_profile()
    items = parse_booking_controls(LISTING_HTML)

    with caplog.at_level("INFO"):
        scan = summarize_scan(profile, items)

    assert scan.profile_id == profile.id
    assert scan.total_count == 5
    assert scan.booked_count == 3
    assert scan.available_count == 2
    assert scan.unclassified_count == 2
    assert [item.text for item in scan.available_items] == ["Забронировать", "Book now"]
    assert not scan.failed
    assert "matched neither vocabulary" in caplog.text


def test_snapshot_reader_scans_profile():
    session = FakeSession(html=LISTING_HTML)
    reader = SnapshotReader(session, timeout_seconds=45)

    scan = reader.scan(make_profile())

    assert session.timeouts == [45]
    assert scan.error is None
    assert scan.available_count == 2
    assert scan.duration_ms is not None


def test_snapshot_reader_reports_timeout():
    reader = SnapshotReader(FakeSession(exc=concurrent.futures.TimeoutError()))

    scan = reader.scan(make_profile())

    assert scan.failed
    assert scan.error == "scan did not finish within 180s"
    assert scan.total_count == 0
    assert scan.duration_ms is not None


def test_snapshot_reader_reports_navigation_failure(caplog):
    reader = SnapshotReader(
        FakeSession(exc=TransientScanError("listing page returned HTTP 503"))
    )

    with caplog.at_level("ERROR"):
        scan = reader.scan(make_profile("broken"))

    assert scan.failed
    assert scan.profile_id == "broken"
    assert scan.error == "listing page returned HTTP 503"
    assert "Scraping broken failed" in caplog.text


def test_snapshot_reader_names_exception_without_message():
    reader = SnapshotReader(FakeSession(exc=RuntimeError()))

    scan = reader.scan(make_profile())

    assert scan.error == "RuntimeError"
