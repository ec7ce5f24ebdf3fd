"""Markup scrape worker: debounced job queue around the Markup.io scraper."""
