"""Listing discovery, change tracking and adaptive re-scrape scheduling."""

__version__ = "0.1.0"
