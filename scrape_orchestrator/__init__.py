"""Scrape job orchestration engine for judicial portals."""
