"""Scouter: SEO crawl engine, job lifecycle and liveness watchdog."""

__version__ = "0.3.0"
