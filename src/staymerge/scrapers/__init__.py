"""Scraper interface for vacation-rental platforms."""

from staymerge.scrapers.base import BaseScraper

__all__ = ["BaseScraper"]
