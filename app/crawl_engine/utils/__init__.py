"""Shared utilities for the crawl engine."""
