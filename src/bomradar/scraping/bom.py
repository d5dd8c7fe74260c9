"""Playwright scraper for the Bureau of Meteorology rain radar.

Steps:
    1. Open the BOM homepage and the location search
    2. Search for "<suburb> <state>" and pick the matching result
    3. Follow the "Rain radar and weather map" link and wait for the map
    4. Read the last-updated section (observation/forecast times)
    5. Pause the radar loop and screenshot each frame, oldest first
"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Optional

from playwright.async_api import Browser, Locator, Page, Playwright, async_playwright

from bomradar.cache.models import FetchError, LocationKey, SnapshotMetadata, utcnow
from bomradar.scraping.base import BaseScraper, FrameCallback, ProgressCallback
from bomradar.scraping.time_parsing import (
    ParseError,
    nearest_time,
    parse_clock_time,
    parse_last_updated,
    resolve_timezone,
)

logger = logging.getLogger(__name__)

BOM_URL = "https://www.bom.gov.au/"

SEARCH_BUTTON_SELECTORS = [
    "button[data-testid='searchLabel']",
    "button[aria-label='Search for a location']",
    "button.search-location__trigger-button",
    "button:has-text('Search for a location')",
]
SEARCH_INPUT_SELECTOR = "#search-enter-keyword"
RESULT_LIST_SELECTOR = "ul[aria-labelledby='location-results-title']"
RESULT_ITEM_SELECTOR = "li.bom-linklist__item[role='listitem']"
RADAR_LINK_SELECTORS = [
    "a.jump-link:has-text('Rain radar and weather map')",
    "a:has-text('Rain radar and weather map')",
    "a:has-text('rain radar')",
    "a[href*='radar']",
]
MAP_SURFACE_SELECTOR = ".esri-view-surface"
MAP_CANVAS_SELECTOR = ".esri-view-surface canvas"
METADATA_SELECTOR = "section[data-testid='weatherMetadata'], section[aria-label='Last updated']"
PAUSE_BUTTON_SELECTORS = [
    "button[aria-label='Pause']",
    "button[data-testid='pauseButton']",
    "button:has-text('Pause')",
]
TIMELINE_SELECTOR = "input[type='range']"
FRAME_LABEL_SELECTORS = [
    "[data-testid='timelineLabel']",
    ".timeline__time",
    "time",
]

STATE_NAMES = {
    "qld": "queensland",
    "nsw": "new south wales",
    "vic": "victoria",
    "sa": "south australia",
    "wa": "western australia",
    "tas": "tasmania",
    "nt": "northern territory",
    "act": "australian capital territory",
}

_CLOCK_RE = re.compile(r"\d{1,2}:\d{2}\s*(?:[ap]m)?", re.IGNORECASE)


def matches_state(text: str, state: str) -> bool:
    """Whether text mentions a state by abbreviation or full name."""
    state = state.lower().strip()
    if not state:
        return True
    text = text.lower()
    if state in text:
        return True
    full_name = STATE_NAMES.get(state)
    return full_name is not None and full_name in text


def frame_offset_minutes(label: Optional[str], observation_time: datetime, default_tz: str) -> Optional[float]:
    """Minutes a timeline label lies before the observation time, or None.

    The label carries only a wall-clock time; it is placed on the date nearest
    the observation. Frames newer than the observation count as 0.
    """
    match = _CLOCK_RE.search(label or "")
    if match is None:
        return None
    try:
        clock = parse_clock_time(match.group(0))
    except ParseError:
        return None
    frame_time = nearest_time(clock, resolve_timezone(None, default_tz), observation_time)
    return max(0.0, (observation_time - frame_time).total_seconds() / 60)


def pick_search_result(results: list[tuple[str, str]], location: LocationKey) -> int:
    """Index of the first (name, description) result matching the location.

    Falls back to the first result when nothing matches.
    """
    suburb = location.name.lower().strip()
    for i, (name, desc) in enumerate(results):
        name_lower = name.lower().strip()
        if suburb in name_lower and matches_state(desc or name, location.region):
            return i
    return 0


class BomScraper(BaseScraper):
    """Captures radar frames from the BOM website with headless Chromium.

    A single browser instance is shared; captures are serialized so only one
    browser context is open at a time.

    Example:
        >>> scraper = BomScraper(frame_count=7)
        >>> metadata = await scraper.fetch(LocationKey("Pomona", "QLD"), on_frame, on_progress)
        >>> await scraper.close()
    """

    def __init__(
        self,
        frame_count: int = 7,
        headless: bool = True,
        timezone: str = "Australia/Brisbane",
        dynamic_content_wait_ms: int = 2000,
        tile_render_wait_ms: int = 5000,
        navigation_timeout_ms: int = 30000,
    ):
        self.frame_count = frame_count
        self.headless = headless
        self.timezone = timezone
        self.dynamic_content_wait_ms = dynamic_content_wait_ms
        self.tile_render_wait_ms = tile_render_wait_ms
        self.navigation_timeout_ms = navigation_timeout_ms

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._semaphore = asyncio.Semaphore(1)

    async def _get_browser(self) -> Browser:
        """Launch the browser on first use."""
        if self._browser is None or not self._browser.is_connected():
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            logger.info("Launched Chromium for radar capture")
        return self._browser

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def fetch(
        self,
        location: LocationKey,
        on_frame: FrameCallback,
        on_progress: ProgressCallback,
    ) -> SnapshotMetadata:
        async with self._semaphore:
            browser = await self._get_browser()
            context = await browser.new_context(
                viewport={"width": 1920, "height": 1080},
                timezone_id=self.timezone,
            )
            try:
                page = await context.new_page()
                page.set_default_timeout(self.navigation_timeout_ms)
                return await self._capture(page, location, on_frame, on_progress)
            finally:
                await context.close()

    async def _first_visible(self, page: Page, selectors: list[str]) -> Optional[Locator]:
        """First selector with a visible match, or None."""
        for selector in selectors:
            locator = page.locator(selector).first
            if await locator.count() and await locator.is_visible():
                return locator
        return None

    async def _capture(
        self,
        page: Page,
        location: LocationKey,
        on_frame: FrameCallback,
        on_progress: ProgressCallback,
    ) -> SnapshotMetadata:
        total = self.frame_count

        on_progress("navigating", 0, total)
        logger.info(f"Navigating to BOM homepage for {location}")
        await page.goto(BOM_URL, wait_until="domcontentloaded")

        search_button = await self._first_visible(page, SEARCH_BUTTON_SELECTORS)
        if search_button is None:
            raise FetchError("Could not find 'Search for a location' button on BOM homepage")
        await search_button.click()

        on_progress("searching", 0, total)
        search_input = page.locator(SEARCH_INPUT_SELECTOR).first
        await search_input.wait_for(state="visible", timeout=5000)
        await search_input.fill(f"{location.name} {location.region}")

        items = page.locator(RESULT_LIST_SELECTOR).locator(RESULT_ITEM_SELECTOR)
        await items.first.wait_for(state="visible", timeout=10000)
        results = []
        for i in range(await items.count()):
            item = items.nth(i)
            name = await item.locator("[data-testid='location-name']").first.text_content() or ""
            desc = await item.locator(".bom-linklist-item__desc").first.text_content() or ""
            results.append((name.strip(), desc.strip()))
        choice = pick_search_result(results, location)
        logger.info(f"Selecting search result {choice}: {results[choice] if results else None}")
        await items.nth(choice).click()

        await page.wait_for_load_state("domcontentloaded")
        await page.wait_for_timeout(self.dynamic_content_wait_ms)

        radar_link = await self._first_visible(page, RADAR_LINK_SELECTORS)
        if radar_link is None:
            raise FetchError(f"Could not find 'Rain radar and weather map' link for {location}")
        await radar_link.click()

        on_progress("loading_map", 0, total)
        await page.wait_for_load_state("domcontentloaded")
        await page.locator(MAP_CANVAS_SELECTOR).first.wait_for(state="visible")
        await page.wait_for_function(
            """() => {
                const canvas = document.querySelector('.esri-view-surface canvas');
                return canvas && canvas.width > 0 && canvas.height > 0;
            }"""
        )
        await page.wait_for_timeout(self.tile_render_wait_ms)

        metadata_text = await page.locator(METADATA_SELECTOR).first.inner_text()
        metadata = parse_last_updated(metadata_text, now=utcnow(), default_tz=self.timezone)

        pause_button = await self._first_visible(page, PAUSE_BUTTON_SELECTORS)
        if pause_button is not None:
            await pause_button.click()

        timeline = page.locator(TIMELINE_SELECTOR).first
        maximum = int(await timeline.get_attribute("max") or total - 1)
        positions = list(range(max(0, maximum - total + 1), maximum + 1))

        surface = page.locator(MAP_SURFACE_SELECTOR).first
        for index, position in enumerate(positions):
            on_progress("capturing", index, len(positions))
            await timeline.evaluate(
                """(el, value) => {
                    el.value = String(value);
                    el.dispatchEvent(new Event('input', { bubbles: true }));
                    el.dispatchEvent(new Event('change', { bubbles: true }));
                }""",
                position,
            )
            await page.wait_for_timeout(self.dynamic_content_wait_ms)

            minutes = await self._frame_offset(page, metadata.observation_time, len(positions) - 1 - index)
            image = await surface.screenshot(type="png")
            on_frame(index, image, minutes)

        on_progress("captured", len(positions), len(positions))
        return metadata

    async def _frame_offset(self, page: Page, observation_time: datetime, steps_back: int) -> float:
        """Minutes between the displayed frame time and the observation time.

        Falls back to the 5-minute radar cadence if the label can't be read.
        """
        label = await self._first_visible(page, FRAME_LABEL_SELECTORS)
        if label is not None:
            minutes = frame_offset_minutes(await label.inner_text(), observation_time, self.timezone)
            if minutes is not None:
                return minutes
        logger.warning("Could not read frame time label, assuming 5-minute cadence")
        return float(steps_back * 5)
