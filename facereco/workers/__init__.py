"""Cooperative search and ingestion workers."""

from facereco.workers.search import SearchEngine, SearchPolicy
from facereco.workers.writer import DescriptorWriter, WriteTarget

__all__ = ["DescriptorWriter", "SearchEngine", "SearchPolicy", "WriteTarget"]
