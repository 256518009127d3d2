"""
Shared test fixtures for statmigrate.

Usage:
    from tests.fixtures import make_document, at, seed_references
"""

from tests.fixtures.documents import (
    BASE_TIME,
    CAMPAIGNS,
    MISSIONS,
    PARTNERS,
    WIDGETS,
    at,
    count_rows,
    fetch_rows,
    make_document,
    seed_references,
)

__all__ = [
    "BASE_TIME",
    "CAMPAIGNS",
    "MISSIONS",
    "PARTNERS",
    "WIDGETS",
    "at",
    "count_rows",
    "fetch_rows",
    "make_document",
    "seed_references",
]
