"""
Core package init for facereco.

LBP face descriptors, the person/track/descriptor database and the cooperative
search and ingestion workers built on top of it.
"""

__version__ = "0.1.0"

__all__ = [
    "descriptors",
    "pipeline",
    "store",
    "workers",
    "config",
    "io_utils",
    "types",
]
