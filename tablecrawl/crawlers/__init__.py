"""Crawler plugins.

    table_page  -- TablePageCrawler, extracts HTML tables from a set of pages
"""
from .table_page import TablePageCrawler, extract_tables

__all__ = ["TablePageCrawler", "extract_tables"]
