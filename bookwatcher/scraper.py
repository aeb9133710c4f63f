"""Browser-backed reader for booking control snapshots."""

from __future__ import annotations

import concurrent.futures
import logging
import random
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, FrozenSet, List, Optional, TypeVar

from bs4 import BeautifulSoup
from bs4.element import Tag
from playwright.sync_api import Browser, BrowserContext, Page, Playwright
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .config import Settings
from .errors import TransientScanError
from .models import LabelKind, ObservedItem, ScanResult, SearchProfile

logger = logging.getLogger(__name__)

T = TypeVar("T")

NAVIGATION_TIMEOUT_MS = 90_000
NETWORK_IDLE_TIMEOUT_MS = 30_000
CONTROL_CLASS_PATTERN = re.compile(r"btn|button|book", re.IGNORECASE)
SHOW_APARTMENTS_PATTERN = re.compile(r"Показать \d+ квартир")

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
)

HIDE_AUTOMATION_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['ru-RU', 'ru', 'en-US'] });
window.chrome = window.chrome || { runtime: {} };
"""

CLICK_ALL_PAGINATION_SCRIPT = """
() => {
  const allDiv = document.querySelector('[data-id="all"]');
  if (allDiv) { allDiv.click(); return true; }
  const leaves = Array.from(document.querySelectorAll('*')).filter(
    el => el.textContent && el.textContent.trim() === 'Все' && el.children.length === 0
  );
  if (leaves.length > 0) { leaves[leaves.length - 1].click(); return true; }
  return false;
}
"""


@dataclass(frozen=True)
class BookingVocabulary:
    """Label vocabulary used to classify booking controls.

    ``booked_markers`` are matched as substrings; the label sets are exact
    matches after whitespace normalisation and lower-casing.
    """

    booked_markers: FrozenSet[str] = field(
        default_factory=lambda: frozenset(
            {
                "забронирован",
                "бронь",
                "продан",
                "недоступ",
                "reserved",
                "booked",
                "sold",
                "unavailable",
            }
        )
    )
    booked_labels: FrozenSet[str] = field(
        default_factory=lambda: frozenset(
            {
                "забронировано",
                "забронирована",
                "продано",
                "продана",
                "недоступно",
                "reserved",
                "booked",
                "sold",
                "unavailable",
            }
        )
    )
    available_labels: FrozenSet[str] = field(
        default_factory=lambda: frozenset({"забронировать", "book", "book now"})
    )

    def is_known_label(self, text: str) -> bool:
        normalized = normalize_label(text)
        return normalized in self.booked_labels or normalized in self.available_labels


DEFAULT_VOCABULARY = BookingVocabulary()


def normalize_label(text: str) -> str:
    return " ".join(text.split()).lower()


def classify_label(text: str, vocabulary: BookingVocabulary = DEFAULT_VOCABULARY) -> LabelKind:
    """Classify a control label as booked, available or unclassified."""
    normalized = normalize_label(text)
    if any(marker in normalized for marker in vocabulary.booked_markers):
        return LabelKind.BOOKED
    if normalized in vocabulary.available_labels:
        return LabelKind.AVAILABLE
    return LabelKind.UNCLASSIFIED


def parse_booking_controls(
    html_text: str,
    vocabulary: BookingVocabulary = DEFAULT_VOCABULARY,
) -> List[ObservedItem]:
    """Extract booking controls from rendered HTML in document order."""
    soup = BeautifulSoup(html_text, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()

    def looks_like_control(tag: Tag) -> bool:
        if tag.name == "button" or tag.get("role") == "button":
            return True
        classes = " ".join(tag.get("class") or [])
        if classes and CONTROL_CLASS_PATTERN.search(classes):
            return True
        if tag.find(True) is None:
            return vocabulary.is_known_label(tag.get_text())
        return False

    def label_of(tag: Tag) -> str:
        return " ".join(tag.get_text(" ", strip=True).split())

    items: List[ObservedItem] = []
    for tag in soup.find_all(looks_like_control):
        # Only the innermost labelled control counts; wrappers would double
        # count. Text-less inner controls such as icons do not hide the outer one.
        if any(label_of(inner) for inner in tag.find_all(looks_like_control)):
            continue
        text = label_of(tag)
        if not text:
            continue
        kind = classify_label(text, vocabulary)
        items.append(ObservedItem(text=text, kind=kind, position_index=len(items)))
    return items


def summarize_scan(profile: SearchProfile, items: List[ObservedItem]) -> ScanResult:
    """Aggregate observed controls into counts for one profile."""
    available = [item for item in items if item.kind is LabelKind.AVAILABLE]
    booked = sum(1 for item in items if item.is_booked)
    unclassified = [item for item in items if item.kind is LabelKind.UNCLASSIFIED]
    for item in unclassified:
        logger.debug(
            "Ignoring unclassified control #%d %r for %s",
            item.position_index,
            item.text,
            profile.id,
        )
    if unclassified:
        logger.info(
            "%d control(s) on %s matched neither vocabulary and were excluded",
            len(unclassified),
            profile.id,
        )
    return ScanResult(
        profile_id=profile.id,
        profile_name=profile.name,
        total_count=len(available) + booked,
        booked_count=booked,
        available_items=available,
        unclassified_count=len(unclassified),
    )


def random_delay(min_ms: int, max_ms: int) -> None:
    time.sleep(random.uniform(min_ms, max_ms) / 1000)


def human_like_scroll(page: Page) -> None:
    page.mouse.move(random.randint(100, 1200), random.randint(100, 800))
    page.mouse.wheel(0, random.randint(300, 900))


class BrowserSession:
    """Owns the single Playwright browser and the thread it lives on.

    Playwright's sync API is bound to the thread that started it, so every
    browser interaction is submitted to one dedicated worker thread.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="browser"
        )
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    def start(self) -> None:
        self._executor.submit(self._ensure_context).result()

    def run(self, action: Callable[[Page], T], timeout: float) -> T:
        """Run ``action`` on a fresh page; raises concurrent.futures.TimeoutError."""
        future = self._executor.submit(self._with_page, action)
        return future.result(timeout=timeout)

    def stop(self) -> None:
        try:
            self._executor.submit(self._close).result(timeout=30)
        except concurrent.futures.TimeoutError:
            logger.warning("Browser did not close within 30s")
        finally:
            self._executor.shutdown(wait=False)

    def _ensure_context(self) -> BrowserContext:
        if self._browser is not None and not self._browser.is_connected():
            logger.warning("Browser disconnected, reinitializing")
            self._browser = None
            self._context = None
        if self._context is not None:
            return self._context

        logger.info("Initializing browser (headless=%s)", self.settings.headless)
        if self._playwright is None:
            self._playwright = sync_playwright().start()

        launch_options = {
            "headless": self.settings.headless,
            "slow_mo": self.settings.slow_mo,
            "args": [
                "--disable-blink-features=AutomationControlled",
                "--disable-dev-shm-usage",
                "--no-sandbox",
                "--disable-gpu",
                "--disable-extensions",
            ],
        }
        proxy = self.settings.proxy
        if proxy.enabled and proxy.url:
            launch_options["proxy"] = {
                "server": proxy.url,
                "username": proxy.username or None,
                "password": proxy.password or None,
            }
        self._browser = self._playwright.chromium.launch(**launch_options)

        context_options = {
            "user_agent": random.choice(USER_AGENTS),
            "viewport": {"width": 1920, "height": 1080},
            "locale": "ru-RU",
            "timezone_id": "Europe/Moscow",
        }
        state_path = self.settings.browser_state_path
        if state_path.exists():
            context_options["storage_state"] = str(state_path)
            logger.info("Loaded browser state from %s", state_path)
        self._context = self._browser.new_context(**context_options)
        self._context.add_init_script(HIDE_AUTOMATION_SCRIPT)
        logger.info("Browser initialized")
        return self._context

    def _with_page(self, action: Callable[[Page], T]) -> T:
        page = self._ensure_context().new_page()
        try:
            return action(page)
        finally:
            page.close()

    def _save_state(self) -> None:
        if self._context is None:
            return
        state_path = self.settings.browser_state_path
        state_path.parent.mkdir(parents=True, exist_ok=True)
        self._context.storage_state(path=str(state_path))
        logger.debug("Browser state saved to %s", state_path)

    def _close(self) -> None:
        if self._context is not None:
            self._save_state()
            self._context.close()
            self._context = None
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None
        logger.info("Browser closed")


class SnapshotReader:
    """Reads one profile page and returns its booking control snapshot."""

    def __init__(
        self,
        session: BrowserSession,
        timeout_seconds: float = 180,
        screenshots_dir: Optional[Path] = None,
        vocabulary: BookingVocabulary = DEFAULT_VOCABULARY,
    ):
        self.session = session
        self.timeout_seconds = timeout_seconds
        self.screenshots_dir = screenshots_dir
        self.vocabulary = vocabulary

    def scan(self, profile: SearchProfile) -> ScanResult:
        """Never raises: every failure becomes a ScanResult with ``error`` set."""
        started = time.monotonic()
        try:
            html_text = self.session.run(
                lambda page: self._load_listing(page, profile),
                timeout=self.timeout_seconds,
            )
            items = parse_booking_controls(html_text, self.vocabulary)
            result = summarize_scan(profile, items)
        except concurrent.futures.TimeoutError:
            message = f"scan did not finish within {self.timeout_seconds:g}s"
            logger.error("Scraping %s failed: %s", profile.id, message)
            result = ScanResult(profile.id, profile.name, error=message)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Scraping %s failed", profile.id)
            result = ScanResult(profile.id, profile.name, error=str(exc) or type(exc).__name__)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        if not result.failed:
            logger.info(
                "Scan of %s completed: total=%d booked=%d available=%d unclassified=%d",
                profile.id,
                result.total_count,
                result.booked_count,
                result.available_count,
                result.unclassified_count,
            )
        return result

    def _load_listing(self, page: Page, profile: SearchProfile) -> str:
        logger.info("Navigating to %s", profile.url)
        response = page.goto(
            profile.url,
            wait_until="domcontentloaded",
            timeout=NAVIGATION_TIMEOUT_MS,
        )
        if response is not None and response.status >= 400:
            raise TransientScanError(
                f"listing page returned HTTP {response.status}"
            )
        random_delay(3000, 5000)
        self._wait_for_network_idle(page, profile)
        self._screenshot(page, "debug-1-loaded.png")

        try:
            tile_view = page.query_selector("text=Плитка")
            if tile_view:
                tile_view.click()
                random_delay(1000, 2000)
                logger.debug("Switched %s to tile view", profile.id)
        except PlaywrightTimeoutError:
            logger.warning("Could not switch %s to tile view", profile.id)

        try:
            show_button = page.get_by_text(SHOW_APARTMENTS_PATTERN)
            show_button.wait_for(state="visible", timeout=10_000)
            show_button.click()
            random_delay(5000, 8000)
            self._wait_for_network_idle(page, profile)
        except PlaywrightTimeoutError:
            logger.warning("No 'show apartments' button found for %s", profile.id)
        self._screenshot(page, "debug-2-after-show.png")

        try:
            close_button = page.locator(
                '[class*="close"], [class*="modal"] button, .popup-close'
            ).first
            if close_button.is_visible():
                close_button.click()
                random_delay(500, 1000)
                logger.debug("Closed popup on %s", profile.id)
        except PlaywrightTimeoutError:
            pass

        page.evaluate("() => window.scrollTo(0, 0)")
        random_delay(500, 1000)
        if page.evaluate(CLICK_ALL_PAGINATION_SCRIPT):
            logger.debug("Expanded pagination on %s", profile.id)
            random_delay(3000, 5000)
            self._wait_for_network_idle(page, profile, timeout=20_000)
        else:
            logger.warning("Could not find the 'all' pagination control on %s", profile.id)

        for _ in range(5):
            human_like_scroll(page)
            random_delay(300, 600)
        random_delay(2000, 3000)
        self._screenshot(page, "debug-3-final.png", full_page=True)
        return page.content()

    def _wait_for_network_idle(
        self,
        page: Page,
        profile: SearchProfile,
        timeout: int = NETWORK_IDLE_TIMEOUT_MS,
    ) -> None:
        try:
            page.wait_for_load_state("networkidle", timeout=timeout)
        except PlaywrightTimeoutError:
            logger.warning("Network idle timeout on %s, continuing", profile.id)

    def _screenshot(self, page: Page, name: str, full_page: bool = False) -> None:
        if self.screenshots_dir is None:
            return
        self.screenshots_dir.mkdir(parents=True, exist_ok=True)
        page.screenshot(path=str(self.screenshots_dir / name), full_page=full_page)
        logger.debug("Screenshot saved: %s", name)
