"""Radar capture from the Bureau of Meteorology website.

Note: BomScraper is lazy-loaded so the scraper contract and time parser can
be imported without Playwright installed.
"""

from bomradar.scraping.base import BaseScraper, FrameCallback, ProgressCallback
from bomradar.scraping.time_parsing import ParseError, parse_last_updated


def __getattr__(name):
    """Lazy load Playwright-dependent components."""
    if name == "BomScraper":
        from bomradar.scraping.bom import BomScraper
        return BomScraper
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "BaseScraper",
    "BomScraper",
    "FrameCallback",
    "ParseError",
    "ProgressCallback",
    "parse_last_updated",
]
