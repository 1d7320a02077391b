"""Core types and exceptions for the crawl engine."""
