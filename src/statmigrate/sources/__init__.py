"""
Document store access.

Backends:
- ElasticsearchSourceStore: production index through AsyncElasticsearch
- InMemorySourceStore: tests and local runs
"""

from statmigrate.sources.elastic import ElasticsearchSourceStore, build_scroll_query
from statmigrate.sources.in_memory import InMemorySourceStore
from statmigrate.sources.interface import BucketKey, ScrollPage, ScrollQuery, SourceStore

__all__ = [
    "BucketKey",
    "ScrollPage",
    "ScrollQuery",
    "SourceStore",
    "ElasticsearchSourceStore",
    "InMemorySourceStore",
    "build_scroll_query",
]
