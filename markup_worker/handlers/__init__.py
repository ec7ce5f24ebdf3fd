"""Job handlers."""

from .scrape import ScrapeHandler, ScrapeFailedError, ScrapeSummary, build_summary

__all__ = ['ScrapeHandler', 'ScrapeFailedError', 'ScrapeSummary', 'build_summary']
