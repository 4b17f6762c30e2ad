"""Identity database, its binary file format and the fair scanner."""

from facereco.store.database import Person, Store, Track
from facereco.store.scanner import FairScanner

__all__ = ["FairScanner", "Person", "Store", "Track"]
